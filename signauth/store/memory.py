"""
In-process store for tests and local development.

All reads and conditional writes run under one lock, which gives the same
compare-and-set semantics the database store gets from filtered updates.
"""
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from signauth.models import (
    OPEN_STATUSES,
    AuditEvent,
    AuditEventType,
    OtpChallenge,
    SignatureRequest,
    SignatureStatus,
)
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import parse_db_timestamp, utc_now


def _same(current: Any, expected: Any) -> bool:
    if isinstance(current, datetime) or isinstance(expected, datetime):
        return parse_db_timestamp(current) == parse_db_timestamp(expected)
    return current == expected


class InMemorySignatureStore(SignatureStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Dict[str, SignatureRequest] = {}
        self._token_index: Dict[str, str] = {}
        self._challenges: Dict[str, OtpChallenge] = {}
        self._events: List[AuditEvent] = []

    # Signature requests
    async def create_request(self, request: SignatureRequest) -> SignatureRequest:
        with self._lock:
            if request.id in self._requests or request.token_hash in self._token_index:
                raise ValueError(f"Duplicate signature request: {request.id}")
            stored = request.model_copy(deep=True)
            self._requests[stored.id] = stored
            self._token_index[stored.token_hash] = stored.id
            return stored.model_copy(deep=True)

    async def get_request(self, request_id: str) -> Optional[SignatureRequest]:
        with self._lock:
            found = self._requests.get(request_id)
            return found.model_copy(deep=True) if found else None

    async def get_request_by_token_hash(self, token_hash: str) -> Optional[SignatureRequest]:
        with self._lock:
            request_id = self._token_index.get(token_hash)
            if request_id is None:
                return None
            return self._requests[request_id].model_copy(deep=True)

    async def update_request(
        self,
        request_id: str,
        updates: Dict[str, Any],
        expected_statuses: Optional[Iterable[SignatureStatus]] = None,
        expected_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[SignatureRequest]:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                return None
            if expected_statuses is not None and current.status not in set(expected_statuses):
                return None
            for field, expected in (expected_fields or {}).items():
                if not _same(getattr(current, field), expected):
                    return None

            updated = current.model_copy(update={"updated_at": utc_now(), **updates}, deep=True)
            self._requests[request_id] = SignatureRequest.model_validate(updated.model_dump())
            return self._requests[request_id].model_copy(deep=True)

    async def list_requests(
        self,
        status: Optional[SignatureStatus] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[SignatureRequest], int]:
        with self._lock:
            items = list(self._requests.values())

        if status is not None:
            items = [r for r in items if r.status == status]
        if search:
            needle = search.lower()
            items = [
                r for r in items
                if needle in r.document_title.lower()
                or needle in r.signer_name.lower()
                or needle in r.signer_email.lower()
            ]
        items.sort(key=lambda r: r.created_at, reverse=True)
        page = items[offset:offset + limit]
        return [r.model_copy(deep=True) for r in page], len(items)

    async def list_expirable(self, now: datetime, limit: int) -> List[SignatureRequest]:
        with self._lock:
            due = [
                r for r in self._requests.values()
                if r.status in OPEN_STATUSES and r.expires_at <= now
            ]
        due.sort(key=lambda r: r.expires_at)
        return [r.model_copy(deep=True) for r in due[:limit]]

    # OTP challenges
    async def create_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        with self._lock:
            stored = challenge.model_copy(deep=True)
            self._challenges[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get_active_challenge(self, request_id: str) -> Optional[OtpChallenge]:
        with self._lock:
            active = [
                c for c in self._challenges.values()
                if c.request_id == request_id and c.is_active
            ]
        if not active:
            return None
        return max(active, key=lambda c: c.issued_at).model_copy(deep=True)

    async def supersede_active_challenges(self, request_id: str, at: datetime) -> int:
        count = 0
        with self._lock:
            for challenge_id, challenge in self._challenges.items():
                if challenge.request_id == request_id and challenge.is_active:
                    self._challenges[challenge_id] = challenge.model_copy(update={"superseded_at": at})
                    count += 1
        return count

    async def increment_challenge_attempts(
        self,
        challenge_id: str,
        max_attempts: int,
    ) -> Optional[OtpChallenge]:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None or not challenge.is_active:
                return None
            if challenge.attempt_count >= max_attempts:
                return None
            updated = challenge.model_copy(update={"attempt_count": challenge.attempt_count + 1})
            self._challenges[challenge_id] = updated
            return updated.model_copy(deep=True)

    async def consume_challenge(self, challenge_id: str, at: datetime) -> Optional[OtpChallenge]:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None or not challenge.is_active:
                return None
            updated = challenge.model_copy(update={"consumed_at": at})
            self._challenges[challenge_id] = updated
            return updated.model_copy(deep=True)

    async def list_challenges(self, request_id: str) -> List[OtpChallenge]:
        with self._lock:
            found = [c for c in self._challenges.values() if c.request_id == request_id]
        found.sort(key=lambda c: c.issued_at)
        return [c.model_copy(deep=True) for c in found]

    # Audit events
    async def append_event(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            stored = event.model_copy(update={"id": event.id or str(uuid.uuid4())}, deep=True)
            self._events.append(stored)
            return stored.model_copy(deep=True)

    async def list_events(
        self,
        request_id: str,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            found = [
                e for e in self._events
                if e.request_id == request_id and (event_type is None or e.event_type == event_type)
            ]
        return [e.model_copy(deep=True) for e in found]
