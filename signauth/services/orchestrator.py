"""
Request orchestrator - the only entry point the HTTP layer talks to.

Composes token resolution, the lifecycle state machine, OTP challenges,
the audit trail and expiry. Every public operation leaves at least one
audit event behind, including rejected attempts.

Notifications to the requester are handed to an optional scheduler
(FastAPI ``BackgroundTasks.add_task``) so mail latency never holds up the
signer's response. Without a scheduler they are awaited inline.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from signauth.config import Settings, get_settings
from signauth.documents import DocumentStore, get_document_store
from signauth.email import EmailDeliveryStatus, EmailService, get_email_service
from signauth.exceptions import (
    DeliveryFailed,
    DocumentUnavailable,
    IntegrityViolation,
    InvalidInput,
    InvalidTransition,
    NotFound,
    OtpVerificationFailed,
    TooManyRequests,
)
from signauth.models import (
    ActorContext,
    AuditEventType,
    CancelResponse,
    CreateSignatureRequest,
    CreateSignatureResponse,
    DeclineResponse,
    DeliveryStatus,
    OtpChallenge,
    OtpChallengeSummary,
    OtpRequestResponse,
    SignatureRequest,
    SignatureRequestDetail,
    SignatureRequestListResponse,
    SignatureRequestSummary,
    SignatureStatus,
    SigningStatusResponse,
    SweepResponse,
    VerificationOutcome,
    VerifyOtpResponse,
)
from signauth.otp import IssuedChallenge, OtpChallengeManager, mask_email
from signauth.services.audit import AuditRecorder
from signauth.services.expiry import ExpirySweeper
from signauth.services.lifecycle import LifecycleStateMachine
from signauth.services.token_resolver import TokenResolver
from signauth.store import get_signature_store
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import is_within_window, seconds_until, utc_now
from signauth.utils.logging import fingerprint, set_context
from signauth.utils.security import generate_public_token

logger = logging.getLogger(__name__)

# Signature of BackgroundTasks.add_task
Scheduler = Callable[..., Any]


def viewer_fingerprint(actor: ActorContext) -> str:
    """Stable id of a viewing session: same network origin and browser."""
    return fingerprint(f"{actor.ip or ''}|{actor.user_agent or ''}", "v_")


class RequestOrchestrator:

    def __init__(
        self,
        store: SignatureStore,
        settings: Optional[Settings] = None,
        email_service: Optional[EmailService] = None,
        document_store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.email = email_service or EmailService(self.settings)
        self.documents = document_store or DocumentStore(self.settings)
        self.clock = clock

        self.resolver = TokenResolver(store, self.settings)
        self.lifecycle = LifecycleStateMachine(store, clock)
        self.otp = OtpChallengeManager(store, self.settings, clock)
        self.audit = AuditRecorder(store, self.documents, clock)
        self.expiry = ExpirySweeper(store, self.lifecycle, self.audit, clock)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load_by_token(self, token: str, actor: Optional[ActorContext]) -> SignatureRequest:
        request = await self.resolver.resolve(token)
        set_context(signature_request_id=request.id)
        request, _ = await self.expiry.expire_if_due(request, actor)
        return request

    async def _load_by_id(self, request_id: str, actor: Optional[ActorContext] = None) -> SignatureRequest:
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFound()
        set_context(signature_request_id=request.id)
        request, _ = await self.expiry.expire_if_due(request, actor)
        return request

    async def _rejected(
        self,
        request: SignatureRequest,
        attempted: str,
        actor: Optional[ActorContext],
        error: InvalidTransition,
    ) -> InvalidTransition:
        await self.audit.record(
            request.id,
            AuditEventType.TRANSITION_REJECTED,
            actor,
            {"attempted": attempted, "status": error.current_status.value},
        )
        return error

    async def _sign_in_progress(self, request_id: str, challenge: Optional[OtpChallenge]) -> bool:
        """
        True when ``challenge`` was accepted by another call that is still
        completing the signature.

        A consumed challenge whose signing attempt was abandoned (integrity
        violation, unreachable document) is recorded in the trail with its
        ``challenge_id``; such a code is simply spent.
        """
        if challenge is None or challenge.consumed_at is None:
            return False
        for event_type in (AuditEventType.INTEGRITY_VIOLATION, AuditEventType.TRANSITION_REJECTED):
            for event in await self.audit.list_events(request_id, event_type):
                if event.metadata.get("challenge_id") == challenge.id:
                    return False
        return True

    async def _ensure_open(
        self,
        request: SignatureRequest,
        attempted: str,
        actor: Optional[ActorContext],
    ) -> None:
        if request.is_terminal:
            raise await self._rejected(
                request, attempted, actor, InvalidTransition(request.status, attempted)
            )

    async def _dispatch(self, schedule: Optional[Scheduler], func: Callable, *args: Any) -> None:
        if schedule is not None:
            schedule(func, *args)
        else:
            await func(*args)

    def build_status(self, request: SignatureRequest) -> SigningStatusResponse:
        return SigningStatusResponse(
            document_title=request.document_title,
            document_type=request.document_type,
            signer_name=request.signer_name,
            signer_email_masked=mask_email(request.signer_email),
            status=request.status,
            expires_at=request.expires_at,
            expires_in_seconds=0 if request.is_terminal else seconds_until(request.expires_at, self.clock()),
            message=request.message,
            signed_at=request.signed_at,
            decline_reason=request.decline_reason,
            signed_document_url=request.signed_document_url,
        )

    # =========================================================================
    # Public (token) operations
    # =========================================================================

    async def get_status(self, token: str, actor: ActorContext) -> SigningStatusResponse:
        """
        Current state of the request behind ``token``.

        Never changes status except the one-time lazy move to EXPIRED.
        """
        request = await self._load_by_token(token, actor)

        if not request.content_hash and not request.is_terminal:
            try:
                request = await self.audit.ensure_content_hash(request)
            except DocumentUnavailable:
                logger.warning(f"Could not capture content hash for {request.id[:8]}... on view")

        await self._record_view(request, actor)
        return self.build_status(request)

    async def _record_view(self, request: SignatureRequest, actor: ActorContext) -> None:
        viewer = viewer_fingerprint(actor)
        window = self.settings.view_session_window_seconds
        now = self.clock()

        views = await self.audit.list_events(request.id, AuditEventType.VIEWED)
        for event in reversed(views):
            if event.metadata.get("viewer") == viewer and is_within_window(event.occurred_at, window, now):
                return

        await self.audit.record(
            request.id,
            AuditEventType.VIEWED,
            actor,
            {"viewer": viewer, "status": request.status.value},
        )

    async def request_otp(self, token: str, actor: ActorContext) -> OtpRequestResponse:
        request = await self._load_by_token(token, actor)
        return await self._issue_and_deliver(request, actor, trigger="signer")

    async def _issue_and_deliver(
        self,
        request: SignatureRequest,
        actor: Optional[ActorContext],
        trigger: str,
    ) -> OtpRequestResponse:
        await self._ensure_open(request, "request_otp", actor)

        try:
            issued = await self.otp.issue(request)
        except TooManyRequests as e:
            await self.audit.record(
                request.id,
                AuditEventType.OTP_REQUEST_REJECTED,
                actor,
                {"reason": e.reason, "retry_after_seconds": e.retry_after, "trigger": trigger},
            )
            raise
        except InvalidTransition as e:
            raise await self._rejected(request, "request_otp", actor, e)

        try:
            request = await self.lifecycle.mark_otp_issued(request)
        except InvalidTransition as e:
            raise await self._rejected(request, "request_otp", actor, e)

        await self.audit.record(
            request.id,
            AuditEventType.OTP_REQUESTED,
            actor,
            {
                "challenge_id": issued.challenge.id,
                "sent_to": issued.masked_email_hint,
                "expires_at": issued.challenge.expires_at.isoformat(),
                "trigger": trigger,
            },
        )

        delivery_status = DeliveryStatus.SENT
        try:
            await self._deliver_code(request, issued)
        except DeliveryFailed as e:
            delivery_status = e.delivery_status
            await self.audit.record(
                request.id,
                AuditEventType.OTP_DELIVERY_FAILED,
                actor,
                {
                    "challenge_id": issued.challenge.id,
                    "delivery_status": e.delivery_status.value,
                    "error": e.reason,
                },
            )

        return OtpRequestResponse(
            masked_email_hint=issued.masked_email_hint,
            expires_in_seconds=issued.expires_in_seconds,
            retry_after_seconds=issued.retry_after_seconds,
            delivery_status=delivery_status,
        )

    async def _deliver_code(self, request: SignatureRequest, issued: IssuedChallenge) -> None:
        """
        Send the code with a bounded wait.

        Raises:
            DeliveryFailed: transport failed, timed out or is not configured
        """
        try:
            result = await asyncio.wait_for(
                self.email.send_otp_code(issued.challenge.sent_to, issued.code, request.document_title),
                timeout=self.settings.email_send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"OTP email for {request.id[:8]}... timed out")
            raise DeliveryFailed(DeliveryStatus.FAILED, "timeout")

        if result.delivery_status == EmailDeliveryStatus.SKIPPED:
            raise DeliveryFailed(DeliveryStatus.SKIPPED, result.error)
        if result.delivery_status != EmailDeliveryStatus.SENT:
            raise DeliveryFailed(DeliveryStatus.FAILED, result.error)

    async def verify_and_sign(
        self,
        token: str,
        code: str,
        actor: ActorContext,
        schedule: Optional[Scheduler] = None,
    ) -> VerifyOtpResponse:
        """
        Verify the OTP and sign.

        Raises:
            OtpVerificationFailed: any code failure; the precise reason is
                only in the audit trail
            InvalidTransition: request is (or just became) terminal
            IntegrityViolation: document changed since it was sent
        """
        request = await self._load_by_token(token, actor)
        await self._ensure_open(request, "sign", actor)

        result = await self.otp.verify(request.id, code)
        if not result.succeeded:
            await self.audit.record(
                request.id,
                AuditEventType.OTP_VERIFY_FAILED,
                actor,
                {
                    "reason": result.outcome.value,
                    "challenge_id": result.challenge.id if result.challenge else None,
                    "attempt_count": result.challenge.attempt_count if result.challenge else None,
                    "attempts_remaining": result.attempts_remaining,
                },
            )
            current = await self.store.get_request(request.id)
            if current is not None and current.is_terminal:
                raise InvalidTransition(current.status, "sign")
            if (
                current is not None
                and result.outcome == VerificationOutcome.NO_ACTIVE_CHALLENGE
                and await self._sign_in_progress(request.id, result.challenge)
            ):
                raise await self._rejected(
                    current,
                    "sign",
                    actor,
                    InvalidTransition(current.status, "sign", "This document is already being signed."),
                )
            raise OtpVerificationFailed(result.outcome)

        await self.audit.record(
            request.id,
            AuditEventType.OTP_VERIFY_SUCCEEDED,
            actor,
            {"challenge_id": result.challenge.id},
        )

        try:
            document_hash = await self.audit.assert_integrity(request)
        except IntegrityViolation as e:
            await self.audit.record(
                request.id,
                AuditEventType.INTEGRITY_VIOLATION,
                actor,
                {
                    "expected_hash": e.expected_hash,
                    "actual_hash": e.actual_hash,
                    "challenge_id": result.challenge.id,
                },
            )
            raise
        except DocumentUnavailable:
            await self.audit.record(
                request.id,
                AuditEventType.TRANSITION_REJECTED,
                actor,
                {
                    "attempted": "sign",
                    "status": request.status.value,
                    "reason": "document_unavailable",
                    "challenge_id": result.challenge.id,
                },
            )
            raise

        try:
            signed = await self.lifecycle.sign(request, self.clock())
        except InvalidTransition as e:
            raise await self._rejected(request, "sign", actor, e)

        await self.audit.record(
            signed.id,
            AuditEventType.SIGNED,
            actor,
            {"document_hash": document_hash, "challenge_id": result.challenge.id},
        )
        await self._dispatch(schedule, self.notify_signed, signed)
        return VerifyOtpResponse(status=signed.status, signed_at=signed.signed_at)

    async def decline(
        self,
        token: str,
        reason: Optional[str],
        actor: ActorContext,
        schedule: Optional[Scheduler] = None,
    ) -> DeclineResponse:
        request = await self._load_by_token(token, actor)
        await self._ensure_open(request, "decline", actor)

        try:
            declined = await self.lifecycle.decline(request, reason)
        except InvalidTransition as e:
            raise await self._rejected(request, "decline", actor, e)

        await self.audit.record(declined.id, AuditEventType.DECLINED, actor, {"reason": reason})
        await self._dispatch(schedule, self.notify_declined, declined)
        return DeclineResponse(status=declined.status, declined_at=declined.updated_at or self.clock())

    # =========================================================================
    # Requester notifications
    # =========================================================================

    async def notify_signed(self, request: SignatureRequest) -> None:
        if not request.requester_email:
            return
        result = await self.email.send_signed_notification(
            request.requester_email,
            request.document_title,
            request.signer_name,
            request.signed_at or self.clock(),
        )
        if result.is_failed:
            logger.warning(f"Signed notification for {request.id[:8]}... not delivered: {result.error}")

    async def notify_declined(self, request: SignatureRequest) -> None:
        if not request.requester_email:
            return
        result = await self.email.send_declined_notification(
            request.requester_email,
            request.document_title,
            request.signer_name,
            request.decline_reason,
        )
        if result.is_failed:
            logger.warning(f"Declined notification for {request.id[:8]}... not delivered: {result.error}")

    # =========================================================================
    # Internal (back-office) operations
    # =========================================================================

    async def create_request(
        self,
        payload: CreateSignatureRequest,
        actor: Optional[ActorContext] = None,
    ) -> CreateSignatureResponse:
        """Create a request. The plaintext token is returned here and nowhere else."""
        days = payload.expires_in_days or self.settings.default_expires_in_days
        if days > self.settings.max_expires_in_days:
            raise InvalidInput(f"expires_in_days must be at most {self.settings.max_expires_in_days}")

        content_hash = None
        try:
            _, content_hash = await self.documents.fetch_content_and_hash(payload.document_url)
        except DocumentUnavailable:
            logger.warning("Document unavailable at creation, content hash will be captured on first view")

        now = self.clock()
        token, token_hash = generate_public_token(self.settings.signing_token_salt)
        request = SignatureRequest(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            document_type=payload.document_type,
            document_id=payload.document_id,
            document_title=payload.document_title,
            document_url=payload.document_url,
            content_hash=content_hash,
            signer_name=payload.signer_name,
            signer_email=payload.signer_email,
            signer_phone=payload.signer_phone,
            requester_id=payload.requester_id,
            requester_email=payload.requester_email,
            message=payload.message,
            status=SignatureStatus.PENDING,
            expires_at=now + timedelta(days=days),
            created_at=now,
        )
        request = await self.store.create_request(request)
        set_context(signature_request_id=request.id)

        await self.audit.record(
            request.id,
            AuditEventType.CREATED,
            actor,
            {
                "requester_id": request.requester_id,
                "document_type": request.document_type,
                "expires_at": request.expires_at.isoformat(),
                "content_hash": content_hash,
            },
        )
        logger.info(f"Signature request {request.id[:8]}... created, expires in {days}d")

        return CreateSignatureResponse(
            id=request.id,
            public_token=token,
            sign_url=self.settings.build_sign_url(token),
            status=request.status,
            expires_at=request.expires_at,
            content_hash=content_hash,
        )

    async def get_request(self, request_id: str, actor: Optional[ActorContext] = None) -> SignatureRequestDetail:
        request = await self._load_by_id(request_id, actor)
        challenges = await self.store.list_challenges(request.id)
        events = await self.audit.list_events(request.id)
        return SignatureRequestDetail(
            **request.model_dump(exclude={"token_hash", "requester_email", "last_otp_issued_at", "updated_at"}),
            challenges=[
                OtpChallengeSummary(**c.model_dump(exclude={"request_id", "code_salt", "code_hash"}))
                for c in challenges
            ],
            audit_trail=events,
        )

    async def list_requests(
        self,
        status: Optional[SignatureStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SignatureRequestListResponse:
        offset = (max(page, 1) - 1) * limit
        items, total = await self.store.list_requests(status, search, offset, limit)

        summaries: List[SignatureRequestSummary] = []
        for item in items:
            item, _ = await self.expiry.expire_if_due(item)
            summaries.append(SignatureRequestSummary(**item.model_dump()))

        return SignatureRequestListResponse(items=summaries, total=total, page=page, limit=limit)

    async def cancel(self, request_id: str, actor: Optional[ActorContext] = None) -> CancelResponse:
        request = await self._load_by_id(request_id, actor)
        await self._ensure_open(request, "cancel", actor)

        try:
            cancelled = await self.lifecycle.cancel(request)
        except InvalidTransition as e:
            raise await self._rejected(request, "cancel", actor, e)

        await self.store.supersede_active_challenges(cancelled.id, self.clock())
        await self.audit.record(cancelled.id, AuditEventType.CANCELLED, actor)
        return CancelResponse(id=cancelled.id, status=cancelled.status, cancelled_at=cancelled.cancelled_at)

    async def attach_signed_document(
        self,
        request_id: str,
        signed_document_url: str,
        actor: Optional[ActorContext] = None,
    ) -> SignatureRequestDetail:
        """Record where the signed artifact lives. Allowed once, on SIGNED requests only."""
        request = await self._load_by_id(request_id, actor)
        if request.status != SignatureStatus.SIGNED:
            raise await self._rejected(
                request,
                "attach_signed_document",
                actor,
                InvalidTransition(
                    request.status,
                    "attach_signed_document",
                    message="A signed document can only be attached to a signed request.",
                ),
            )

        if request.signed_document_url == signed_document_url:
            return await self.get_request(request_id)

        updated = await self.store.update_request(
            request.id,
            {"signed_document_url": signed_document_url, "updated_at": self.clock()},
            expected_statuses=[SignatureStatus.SIGNED],
            expected_fields={"signed_document_url": None},
        )
        if updated is None:
            raise await self._rejected(
                request,
                "attach_signed_document",
                actor,
                InvalidTransition(
                    request.status,
                    "attach_signed_document",
                    message="A signed document is already attached to this request.",
                ),
            )

        await self.audit.record(
            request.id,
            AuditEventType.SIGNED_DOCUMENT_ATTACHED,
            actor,
            {"signed_document_url": signed_document_url},
        )
        return await self.get_request(request_id)

    async def resend_otp(self, request_id: str, actor: Optional[ActorContext] = None) -> OtpRequestResponse:
        """Back-office triggered issuance; same cooldown and cap as the signer's own request."""
        request = await self._load_by_id(request_id, actor)
        return await self._issue_and_deliver(request, actor, trigger="internal")

    async def sweep_expired(self, limit: Optional[int] = None) -> SweepResponse:
        expired_ids = await self.expiry.sweep(limit or self.settings.sweep_batch_size)
        return SweepResponse(expired=len(expired_ids), request_ids=expired_ids)


_orchestrator: Optional[RequestOrchestrator] = None


def get_orchestrator() -> RequestOrchestrator:
    """Get the orchestrator singleton wired to the configured collaborators."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RequestOrchestrator(
            store=get_signature_store(),
            settings=get_settings(),
            email_service=get_email_service(),
            document_store=get_document_store(),
        )
    return _orchestrator
