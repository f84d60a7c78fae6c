"""
Tests for the audit recorder and document integrity checks.
"""
import pytest

from signauth.exceptions import DocumentUnavailable, IntegrityViolation
from signauth.models import ActorContext, AuditEventType
from signauth.services.audit import MAX_USER_AGENT_LENGTH, AuditRecorder
from signauth.store.base import SignatureStore
from signauth.utils.security import compute_bytes_hash

from conftest import DOCUMENT_BYTES, DOCUMENT_URL


@pytest.fixture
def audit(store, document_store, clock):
    return AuditRecorder(store, document_store, clock)


class TestRecord:

    @pytest.mark.asyncio
    async def test_record_captures_actor(self, audit, clock):
        actor = ActorContext(ip="198.51.100.7", user_agent="UA", user_id="user-9")

        event = await audit.record("req-1", AuditEventType.VIEWED, actor, {"viewer": "v_1"})

        assert event.id
        assert event.occurred_at == clock()
        assert event.actor_ip == "198.51.100.7"
        assert event.metadata == {"viewer": "v_1", "actor_user_id": "user-9"}

    @pytest.mark.asyncio
    async def test_long_user_agent_truncated(self, audit):
        actor = ActorContext(ip="198.51.100.7", user_agent="x" * 2000)
        event = await audit.record("req-1", AuditEventType.VIEWED, actor)
        assert len(event.actor_user_agent) == MAX_USER_AGENT_LENGTH

    @pytest.mark.asyncio
    async def test_events_listed_in_order(self, audit, clock):
        await audit.record("req-1", AuditEventType.CREATED)
        clock.advance(seconds=5)
        await audit.record("req-1", AuditEventType.VIEWED)
        await audit.record("req-2", AuditEventType.CREATED)

        events = await audit.list_events("req-1")

        assert [e.event_type for e in events] == [AuditEventType.CREATED, AuditEventType.VIEWED]

    def test_store_contract_has_no_event_mutation(self):
        names = {name for name in dir(SignatureStore) if "event" in name}
        assert names == {"append_event", "list_events", "latest_event"}


class TestIntegrity:

    @pytest.mark.asyncio
    async def test_content_hash_captured_at_creation(self, make_request):
        created = await make_request()
        assert created.content_hash == compute_bytes_hash(DOCUMENT_BYTES)

    @pytest.mark.asyncio
    async def test_unchanged_document_passes(self, audit, store, make_request):
        created = await make_request()
        request = await store.get_request(created.id)
        assert await audit.assert_integrity(request) == created.content_hash

    @pytest.mark.asyncio
    async def test_changed_document_raises(self, audit, store, make_request, document_store):
        created = await make_request()
        document_store.documents[DOCUMENT_URL] = b"%PDF-1.7 tampered body"

        with pytest.raises(IntegrityViolation) as exc_info:
            await audit.assert_integrity(await store.get_request(created.id))

        assert exc_info.value.expected_hash == created.content_hash
        assert exc_info.value.actual_hash == compute_bytes_hash(b"%PDF-1.7 tampered body")

    @pytest.mark.asyncio
    async def test_hash_captured_once(self, audit, store, make_request, document_store):
        document_store.documents.pop(DOCUMENT_URL)
        created = await make_request()
        assert created.content_hash is None

        document_store.documents[DOCUMENT_URL] = b"first"
        request = await audit.ensure_content_hash(await store.get_request(created.id))
        document_store.documents[DOCUMENT_URL] = b"second"
        again = await audit.ensure_content_hash(request)

        assert request.content_hash == compute_bytes_hash(b"first")
        assert again.content_hash == compute_bytes_hash(b"first")

    @pytest.mark.asyncio
    async def test_unavailable_document_propagates(self, audit, store, make_request, document_store):
        created = await make_request()
        document_store.documents.pop(DOCUMENT_URL)
        with pytest.raises(DocumentUnavailable):
            await audit.assert_integrity(await store.get_request(created.id))
