"""
Persistence contract for signature requests, OTP challenges and audit events.

Every mutation that participates in a race is a conditional write: the
caller states what it expects the row to look like and gets ``None`` back
when somebody else changed it first. Nothing here deletes rows, and audit
events have no update path at all.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from signauth.models import (
    AuditEvent,
    AuditEventType,
    OtpChallenge,
    SignatureRequest,
    SignatureStatus,
)


class SignatureStore(ABC):

    # Signature requests
    @abstractmethod
    async def create_request(self, request: SignatureRequest) -> SignatureRequest:
        ...

    @abstractmethod
    async def get_request(self, request_id: str) -> Optional[SignatureRequest]:
        ...

    @abstractmethod
    async def get_request_by_token_hash(self, token_hash: str) -> Optional[SignatureRequest]:
        ...

    @abstractmethod
    async def update_request(
        self,
        request_id: str,
        updates: Dict[str, Any],
        expected_statuses: Optional[Iterable[SignatureStatus]] = None,
        expected_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[SignatureRequest]:
        """
        Apply ``updates`` only if the row still matches.

        ``updated_at`` is stamped with the current time unless ``updates``
        carries one.

        Args:
            expected_statuses: row status must be one of these
            expected_fields: row columns must equal these values (None means NULL)

        Returns:
            The updated request, or None if the row did not match.
        """

    @abstractmethod
    async def list_requests(
        self,
        status: Optional[SignatureStatus] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[SignatureRequest], int]:
        """Newest first. Returns (page, total)."""

    @abstractmethod
    async def list_expirable(self, now: datetime, limit: int) -> List[SignatureRequest]:
        """Open (PENDING/OTP_ISSUED) requests with ``expires_at <= now``."""

    # OTP challenges
    @abstractmethod
    async def create_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        ...

    @abstractmethod
    async def get_active_challenge(self, request_id: str) -> Optional[OtpChallenge]:
        """Latest challenge that is neither consumed nor superseded."""

    @abstractmethod
    async def supersede_active_challenges(self, request_id: str, at: datetime) -> int:
        ...

    @abstractmethod
    async def increment_challenge_attempts(
        self,
        challenge_id: str,
        max_attempts: int,
    ) -> Optional[OtpChallenge]:
        """
        Atomically bump ``attempt_count`` while it is below ``max_attempts``
        and the challenge is still active. None when the bump was refused.
        """

    @abstractmethod
    async def consume_challenge(self, challenge_id: str, at: datetime) -> Optional[OtpChallenge]:
        """Set ``consumed_at`` once. None if it was already consumed or superseded."""

    @abstractmethod
    async def list_challenges(self, request_id: str) -> List[OtpChallenge]:
        ...

    # Audit events
    @abstractmethod
    async def append_event(self, event: AuditEvent) -> AuditEvent:
        ...

    @abstractmethod
    async def list_events(
        self,
        request_id: str,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        """Oldest first."""

    async def latest_event(
        self,
        request_id: str,
        event_type: AuditEventType,
    ) -> Optional[AuditEvent]:
        events = await self.list_events(request_id, event_type)
        return events[-1] if events else None
