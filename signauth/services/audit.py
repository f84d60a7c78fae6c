"""
Append-only audit trail and document integrity checks.

Every state-relevant action on a signature request is recorded here with
the caller's network origin. Events are never updated or removed.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from signauth.documents import DocumentStore
from signauth.exceptions import IntegrityViolation
from signauth.models import ActorContext, AuditEvent, AuditEventType, SignatureRequest
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import utc_now
from signauth.utils.security import hashes_match

logger = logging.getLogger(__name__)

MAX_USER_AGENT_LENGTH = 500


class AuditRecorder:

    def __init__(
        self,
        store: SignatureStore,
        document_store: DocumentStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.document_store = document_store
        self.clock = clock

    async def record(
        self,
        request_id: str,
        event_type: AuditEventType,
        actor: Optional[ActorContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        actor = actor or ActorContext()
        data = dict(metadata or {})
        if actor.user_id and "actor_user_id" not in data:
            data["actor_user_id"] = actor.user_id

        user_agent = actor.user_agent[:MAX_USER_AGENT_LENGTH] if actor.user_agent else None
        event = AuditEvent(
            request_id=request_id,
            event_type=event_type,
            occurred_at=self.clock(),
            actor_ip=actor.ip,
            actor_user_agent=user_agent,
            metadata=data,
        )
        stored = await self.store.append_event(event)
        logger.info(f"Audit {event_type.value} for {request_id[:8]}...")
        return stored

    async def list_events(
        self,
        request_id: str,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        return await self.store.list_events(request_id, event_type)

    async def ensure_content_hash(self, request: SignatureRequest) -> SignatureRequest:
        """
        Capture the document's content hash if the request has none yet.

        The hash is written once; a concurrent writer that got there first
        wins and its value is returned.

        Raises:
            DocumentUnavailable: document could not be fetched
        """
        if request.content_hash:
            return request

        _, content_hash = await self.document_store.fetch_content_and_hash(request.document_url)
        updated = await self.store.update_request(
            request.id,
            {"content_hash": content_hash, "updated_at": self.clock()},
            expected_fields={"content_hash": None},
        )
        if updated is None:
            current = await self.store.get_request(request.id)
            return current or request

        logger.info(f"Captured content hash for {request.id[:8]}...: {content_hash[:12]}")
        return updated

    async def assert_integrity(self, request: SignatureRequest) -> str:
        """
        Re-fetch the document and compare against the stored content hash.

        A request without a stored hash gets one captured now and passes.

        Returns:
            The current document hash.

        Raises:
            IntegrityViolation: content changed since the hash was captured
            DocumentUnavailable: document could not be fetched
        """
        if not request.content_hash:
            captured = await self.ensure_content_hash(request)
            if captured.content_hash:
                return captured.content_hash

        _, actual = await self.document_store.fetch_content_and_hash(request.document_url)
        if not hashes_match(request.content_hash, actual):
            logger.error(
                f"Integrity violation for {request.id[:8]}...: "
                f"expected {str(request.content_hash)[:12]}, got {actual[:12]}"
            )
            raise IntegrityViolation(request.content_hash, actual)
        return actual
