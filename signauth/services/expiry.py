"""
Deadline enforcement.

Expiry is applied lazily whenever a request is read and eagerly by the
sweep. Both go through ``expire_if_due`` so an EXPIRED event is written
exactly once, by whichever caller wins the transition.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from signauth.models import ActorContext, AuditEventType, SignatureRequest
from signauth.services.audit import AuditRecorder
from signauth.services.lifecycle import LifecycleStateMachine
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_BATCH_SIZE = 200


class ExpirySweeper:

    def __init__(
        self,
        store: SignatureStore,
        lifecycle: LifecycleStateMachine,
        audit: AuditRecorder,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.audit = audit
        self.clock = clock

    async def expire_if_due(
        self,
        request: SignatureRequest,
        actor: Optional[ActorContext] = None,
        trigger: str = "lazy",
    ) -> Tuple[SignatureRequest, bool]:
        """
        Returns:
            (current request, whether this call performed the transition)
        """
        expired, transitioned = await self.lifecycle.evaluate_expiry(request)
        if not transitioned:
            return expired, False

        await self.audit.record(
            expired.id,
            AuditEventType.EXPIRED,
            actor,
            {"trigger": trigger, "expires_at": request.expires_at.isoformat()},
        )
        return expired, True

    async def sweep(self, limit: int = DEFAULT_SWEEP_BATCH_SIZE) -> List[str]:
        """Expire every open request past its deadline. Safe to run concurrently."""
        due = await self.store.list_expirable(self.clock(), limit)
        expired_ids = []
        for request in due:
            _, transitioned = await self.expire_if_due(request, trigger="sweep")
            if transitioned:
                expired_ids.append(request.id)

        if expired_ids:
            logger.info(f"Expiry sweep: expired {len(expired_ids)} of {len(due)} due request(s)")
        return expired_ids
