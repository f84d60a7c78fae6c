"""
Supabase (PostgREST) implementation of the signature store.

Uses the service key; the public signing endpoints carry no user JWT, so
row-level security is enforced by the API layer instead.

Conditional writes are expressed as filtered updates
(``update ... where id = ? and status in (...)``). PostgREST returns the
affected rows, so an empty result means the row no longer matched and the
caller lost the race.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from supabase import Client, create_client

from signauth.config import Settings, get_settings
from signauth.models import (
    OPEN_STATUSES,
    AuditEvent,
    AuditEventType,
    OtpChallenge,
    SignatureRequest,
    SignatureStatus,
)
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "signature_requests"
CHALLENGES_TABLE = "signature_otp_challenges"
EVENTS_TABLE = "signature_audit_events"

# Compare-and-set retries for the attempt counter
MAX_CAS_RETRIES = 5


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_timestamp(value)
    if isinstance(value, SignatureStatus):
        return value.value
    return value


def _serialize_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _serialize(v) for k, v in updates.items()}


class SupabaseSignatureStore(SignatureStore):
    """Signature store backed by Supabase tables."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(
                self.settings.supabase_url,
                self.settings.supabase_service_key,
            )
        return self._client

    def table(self, table_name: str):
        return self.client.table(table_name)

    # Signature requests
    async def create_request(self, request: SignatureRequest) -> SignatureRequest:
        row = request.model_dump(mode="json")
        result = self.table(REQUESTS_TABLE).insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Insert into {REQUESTS_TABLE} returned no data")
        logger.info(f"Created signature request {request.id[:8]}...")
        return SignatureRequest(**result.data[0])

    async def get_request(self, request_id: str) -> Optional[SignatureRequest]:
        result = self.table(REQUESTS_TABLE).select("*").eq("id", request_id).limit(1).execute()
        return SignatureRequest(**result.data[0]) if result.data else None

    async def get_request_by_token_hash(self, token_hash: str) -> Optional[SignatureRequest]:
        result = self.table(REQUESTS_TABLE).select("*").eq("token_hash", token_hash).limit(1).execute()
        return SignatureRequest(**result.data[0]) if result.data else None

    async def update_request(
        self,
        request_id: str,
        updates: Dict[str, Any],
        expected_statuses: Optional[Iterable[SignatureStatus]] = None,
        expected_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[SignatureRequest]:
        data = _serialize_updates({"updated_at": utc_now(), **updates})
        query = self.table(REQUESTS_TABLE).update(data).eq("id", request_id)

        if expected_statuses is not None:
            query = query.in_("status", [s.value for s in expected_statuses])
        for field, expected in (expected_fields or {}).items():
            if expected is None:
                query = query.is_(field, "null")
            else:
                query = query.eq(field, _serialize(expected))

        result = query.execute()
        if not result.data:
            logger.info(f"update_request: no match for {request_id[:8]}... (condition failed)")
            return None
        return SignatureRequest(**result.data[0])

    async def list_requests(
        self,
        status: Optional[SignatureStatus] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[SignatureRequest], int]:
        query = self.table(REQUESTS_TABLE).select("*", count="exact")
        if status is not None:
            query = query.eq("status", status.value)
        if search:
            # PostgREST or-filter syntax; commas and parentheses would break it
            term = search.replace(",", " ").replace("(", " ").replace(")", " ").strip()
            if term:
                query = query.or_(
                    f"document_title.ilike.%{term}%,"
                    f"signer_name.ilike.%{term}%,"
                    f"signer_email.ilike.%{term}%"
                )
        result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        items = [SignatureRequest(**row) for row in (result.data or [])]
        return items, result.count or 0

    async def list_expirable(self, now: datetime, limit: int) -> List[SignatureRequest]:
        result = (
            self.table(REQUESTS_TABLE)
            .select("*")
            .in_("status", [s.value for s in OPEN_STATUSES])
            .lte("expires_at", to_db_timestamp(now))
            .order("expires_at")
            .limit(limit)
            .execute()
        )
        return [SignatureRequest(**row) for row in (result.data or [])]

    # OTP challenges
    async def create_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        result = self.table(CHALLENGES_TABLE).insert(challenge.model_dump(mode="json")).execute()
        if not result.data:
            raise RuntimeError(f"Insert into {CHALLENGES_TABLE} returned no data")
        return OtpChallenge(**result.data[0])

    async def get_active_challenge(self, request_id: str) -> Optional[OtpChallenge]:
        result = (
            self.table(CHALLENGES_TABLE)
            .select("*")
            .eq("request_id", request_id)
            .is_("consumed_at", "null")
            .is_("superseded_at", "null")
            .order("issued_at", desc=True)
            .limit(1)
            .execute()
        )
        return OtpChallenge(**result.data[0]) if result.data else None

    async def supersede_active_challenges(self, request_id: str, at: datetime) -> int:
        result = (
            self.table(CHALLENGES_TABLE)
            .update({"superseded_at": to_db_timestamp(at)})
            .eq("request_id", request_id)
            .is_("consumed_at", "null")
            .is_("superseded_at", "null")
            .execute()
        )
        return len(result.data or [])

    async def increment_challenge_attempts(
        self,
        challenge_id: str,
        max_attempts: int,
    ) -> Optional[OtpChallenge]:
        # PostgREST has no "set x = x + 1"; compare-and-set on the old value
        for _ in range(MAX_CAS_RETRIES):
            current = self.table(CHALLENGES_TABLE).select("*").eq("id", challenge_id).limit(1).execute()
            if not current.data:
                return None
            challenge = OtpChallenge(**current.data[0])
            if not challenge.is_active or challenge.attempt_count >= max_attempts:
                return None

            result = (
                self.table(CHALLENGES_TABLE)
                .update({"attempt_count": challenge.attempt_count + 1})
                .eq("id", challenge_id)
                .eq("attempt_count", challenge.attempt_count)
                .is_("consumed_at", "null")
                .is_("superseded_at", "null")
                .execute()
            )
            if result.data:
                return OtpChallenge(**result.data[0])
            logger.info(f"increment_challenge_attempts: contention on {challenge_id[:8]}..., retrying")

        logger.warning(f"increment_challenge_attempts: gave up after {MAX_CAS_RETRIES} tries")
        return None

    async def consume_challenge(self, challenge_id: str, at: datetime) -> Optional[OtpChallenge]:
        result = (
            self.table(CHALLENGES_TABLE)
            .update({"consumed_at": to_db_timestamp(at)})
            .eq("id", challenge_id)
            .is_("consumed_at", "null")
            .is_("superseded_at", "null")
            .execute()
        )
        return OtpChallenge(**result.data[0]) if result.data else None

    async def list_challenges(self, request_id: str) -> List[OtpChallenge]:
        result = (
            self.table(CHALLENGES_TABLE)
            .select("*")
            .eq("request_id", request_id)
            .order("issued_at")
            .execute()
        )
        return [OtpChallenge(**row) for row in (result.data or [])]

    # Audit events
    async def append_event(self, event: AuditEvent) -> AuditEvent:
        row = event.model_dump(mode="json", exclude_none=True)
        result = self.table(EVENTS_TABLE).insert(row).execute()
        if not result.data:
            raise RuntimeError(f"Insert into {EVENTS_TABLE} returned no data")
        return AuditEvent(**result.data[0])

    async def list_events(
        self,
        request_id: str,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        query = self.table(EVENTS_TABLE).select("*").eq("request_id", request_id)
        if event_type is not None:
            query = query.eq("event_type", event_type.value)
        result = query.order("occurred_at").execute()
        return [AuditEvent(**row) for row in (result.data or [])]
