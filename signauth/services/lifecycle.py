"""
Lifecycle state machine for signature requests.

The transition table below is the only place that decides which status
changes are legal. Every transition is applied with a single conditional
write against the store, so two concurrent callers can never both move the
same request out of an open state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from signauth.exceptions import InvalidTransition, NotFound
from signauth.models import OPEN_STATUSES, SignatureRequest, SignatureStatus
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import is_past, utc_now

logger = logging.getLogger(__name__)


class Guard:
    NONE = "none"
    NOT_EXPIRED = "not_expired"  # now < expires_at
    EXPIRED = "expired"          # now >= expires_at


@dataclass(frozen=True)
class Transition:
    name: str
    sources: FrozenSet[SignatureStatus]
    target: SignatureStatus
    guard: str


REQUEST_OTP = Transition("request_otp", OPEN_STATUSES, SignatureStatus.OTP_ISSUED, Guard.NOT_EXPIRED)
SIGN = Transition("sign", OPEN_STATUSES, SignatureStatus.SIGNED, Guard.NOT_EXPIRED)
DECLINE = Transition("decline", OPEN_STATUSES, SignatureStatus.DECLINED, Guard.NOT_EXPIRED)
EXPIRE = Transition("expire", OPEN_STATUSES, SignatureStatus.EXPIRED, Guard.EXPIRED)
CANCEL = Transition("cancel", OPEN_STATUSES, SignatureStatus.CANCELLED, Guard.NONE)

TRANSITIONS: Dict[str, Transition] = {
    t.name: t for t in (REQUEST_OTP, SIGN, DECLINE, EXPIRE, CANCEL)
}


class LifecycleStateMachine:

    def __init__(self, store: SignatureStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def is_due_for_expiry(self, request: SignatureRequest, now: Optional[datetime] = None) -> bool:
        return request.status in OPEN_STATUSES and is_past(request.expires_at, now or self.clock())

    def check(self, request: SignatureRequest, transition: Transition, now: Optional[datetime] = None) -> None:
        """Raise InvalidTransition unless ``transition`` is legal for ``request`` right now."""
        if request.status not in transition.sources:
            raise InvalidTransition(request.status, transition.name)

        now = now or self.clock()
        expired = is_past(request.expires_at, now)
        if transition.guard == Guard.NOT_EXPIRED and expired:
            raise InvalidTransition(
                request.status,
                transition.name,
                message="This signature request has expired.",
            )
        if transition.guard == Guard.EXPIRED and not expired:
            raise InvalidTransition(
                request.status,
                transition.name,
                message="This signature request has not reached its deadline yet.",
            )

    async def apply(
        self,
        request: SignatureRequest,
        transition: Transition,
        updates: Optional[Dict[str, Any]] = None,
    ) -> SignatureRequest:
        """
        Check guards and apply ``transition`` atomically.

        Raises:
            InvalidTransition: guard failed, or the stored status changed
                under us (the caller sees the status that won)
        """
        now = self.clock()
        self.check(request, transition, now)

        changes = {"status": transition.target, "updated_at": now, **(updates or {})}
        updated = await self.store.update_request(
            request.id,
            changes,
            expected_statuses=transition.sources,
        )
        if updated is None:
            current = await self.store.get_request(request.id)
            if current is None:
                raise NotFound()
            logger.info(
                f"Transition {transition.name} lost race for {request.id[:8]}..., "
                f"current status {current.status.value}"
            )
            raise InvalidTransition(current.status, transition.name)

        logger.info(
            f"Transition {transition.name}: {request.status.value} -> {updated.status.value} "
            f"for {request.id[:8]}..."
        )
        return updated

    async def evaluate_expiry(self, request: SignatureRequest) -> Tuple[SignatureRequest, bool]:
        """
        Lazily move an overdue open request to EXPIRED.

        Returns:
            (current request, whether this call performed the transition).
            A caller that lost the race gets the winner's state and False.
        """
        if not self.is_due_for_expiry(request):
            return request, False
        try:
            return await self.expire(request), True
        except InvalidTransition:
            current = await self.store.get_request(request.id)
            return current or request, False

    async def mark_otp_issued(self, request: SignatureRequest) -> SignatureRequest:
        return await self.apply(request, REQUEST_OTP)

    async def sign(self, request: SignatureRequest, signed_at: datetime) -> SignatureRequest:
        return await self.apply(request, SIGN, {"signed_at": signed_at})

    async def decline(self, request: SignatureRequest, reason: Optional[str]) -> SignatureRequest:
        return await self.apply(request, DECLINE, {"decline_reason": reason})

    async def cancel(self, request: SignatureRequest) -> SignatureRequest:
        return await self.apply(request, CANCEL, {"cancelled_at": self.clock()})

    async def expire(self, request: SignatureRequest) -> SignatureRequest:
        return await self.apply(request, EXPIRE, {"expired_at": self.clock()})
