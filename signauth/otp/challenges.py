"""
One-time-code challenges bound to a signature request.

A challenge stores only a salted hash of its code. At most one challenge
per request is active; issuing a new one supersedes the previous. The
attempt counter is bumped atomically before the code is compared, so
concurrent guesses can never exceed ``max_attempts`` in total.
"""
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from signauth.config import Settings, get_settings
from signauth.exceptions import InvalidTransition, TooManyRequests
from signauth.models import (
    OPEN_STATUSES,
    OtpChallenge,
    SignatureRequest,
    VerificationOutcome,
)
from signauth.store.base import SignatureStore
from signauth.utils.datetime_utils import is_past, seconds_since, seconds_until, utc_now
from signauth.utils.security import (
    generate_otp_code,
    generate_salt,
    hash_otp_code,
    otp_code_matches,
)

logger = logging.getLogger(__name__)


def mask_email(email: Optional[str]) -> str:
    """Mask email for display: john@example.com -> j***@example.com"""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if not local:
        return f"***@{domain}"
    return f"{local[0]}***@{domain}"


@dataclass
class IssuedChallenge:
    """A freshly issued challenge together with its plaintext code.

    The code lives only in this object long enough to be handed to the
    email collaborator.
    """
    challenge: OtpChallenge
    code: str
    masked_email_hint: str
    expires_in_seconds: int
    retry_after_seconds: int


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    challenge: Optional[OtpChallenge] = None
    attempts_remaining: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == VerificationOutcome.SUCCESS


class OtpChallengeManager:

    def __init__(
        self,
        store: SignatureStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    def check_issue_allowed(self, request: SignatureRequest, now: Optional[datetime] = None) -> None:
        """
        Raises:
            TooManyRequests: resend cooldown not elapsed, or issue cap reached
        """
        now = now or self.clock()
        cooldown = self.settings.otp_min_resend_seconds

        elapsed = seconds_since(request.last_otp_issued_at, now)
        if elapsed is not None and elapsed < cooldown:
            raise TooManyRequests(
                retry_after=math.ceil(cooldown - elapsed),
                reason="cooldown",
            )

        if request.otp_issue_count >= self.settings.otp_max_issues_per_request:
            raise TooManyRequests(
                retry_after=max(1, seconds_until(request.expires_at, now)),
                reason="issue_limit",
                message="Maximum number of verification codes reached for this request.",
            )

    async def issue(self, request: SignatureRequest) -> IssuedChallenge:
        """
        Issue a new challenge for ``request``, superseding any active one.

        The cooldown slot is claimed with a conditional write on the
        request's issue counters, so two simultaneous calls produce one
        challenge and one TooManyRequests.

        Raises:
            TooManyRequests: cooldown or issue cap
            InvalidTransition: request became terminal meanwhile
        """
        now = self.clock()
        if request.status not in OPEN_STATUSES:
            raise InvalidTransition(request.status, "request_otp")
        self.check_issue_allowed(request, now)

        claimed = await self.store.update_request(
            request.id,
            {
                "otp_issue_count": request.otp_issue_count + 1,
                "last_otp_issued_at": now,
                "updated_at": now,
            },
            expected_statuses=OPEN_STATUSES,
            expected_fields={
                "otp_issue_count": request.otp_issue_count,
                "last_otp_issued_at": request.last_otp_issued_at,
            },
        )
        if claimed is None:
            current = await self.store.get_request(request.id)
            if current is not None and current.status not in OPEN_STATUSES:
                raise InvalidTransition(current.status, "request_otp")
            logger.info(f"Concurrent OTP issue for {request.id[:8]}..., rejecting")
            if current is not None:
                self.check_issue_allowed(current, now)
            raise TooManyRequests(retry_after=self.settings.otp_min_resend_seconds)

        superseded = await self.store.supersede_active_challenges(request.id, now)
        if superseded:
            logger.info(f"Superseded {superseded} active challenge(s) for {request.id[:8]}...")

        code = generate_otp_code()
        salt = generate_salt()
        challenge = OtpChallenge(
            id=str(uuid.uuid4()),
            request_id=request.id,
            code_salt=salt,
            code_hash=hash_otp_code(code, salt, self.settings.otp_pepper),
            sent_to=request.signer_email,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
            attempt_count=0,
            max_attempts=self.settings.otp_max_attempts,
        )
        challenge = await self.store.create_challenge(challenge)
        logger.info(
            f"Issued OTP challenge {challenge.id[:8]}... for {request.id[:8]}... "
            f"(issue {claimed.otp_issue_count}/{self.settings.otp_max_issues_per_request})"
        )

        return IssuedChallenge(
            challenge=challenge,
            code=code,
            masked_email_hint=mask_email(request.signer_email),
            expires_in_seconds=self.settings.otp_ttl_seconds,
            retry_after_seconds=self.settings.otp_min_resend_seconds,
        )

    async def latest_challenge(self, request_id: str) -> Optional[OtpChallenge]:
        challenges = await self.store.list_challenges(request_id)
        return challenges[-1] if challenges else None

    async def verify(self, request_id: str, code: str) -> VerificationResult:
        """
        Check ``code`` against the active challenge.

        Lockout is evaluated before the attempt counter moves, so once
        ``max_attempts`` is reached even the correct code yields LOCKED_OUT.
        Expired challenges and missing challenges never consume an attempt.
        NO_ACTIVE_CHALLENGE carries the most recent challenge, if any, so a
        caller can tell a code that was already accepted from one never issued.
        """
        now = self.clock()
        challenge = await self.store.get_active_challenge(request_id)
        if challenge is None:
            latest = await self.latest_challenge(request_id)
            return VerificationResult(VerificationOutcome.NO_ACTIVE_CHALLENGE, latest)

        if challenge.attempt_count >= challenge.max_attempts:
            return VerificationResult(VerificationOutcome.LOCKED_OUT, challenge, 0)

        if is_past(challenge.expires_at, now):
            return VerificationResult(VerificationOutcome.EXPIRED, challenge)

        bumped = await self.store.increment_challenge_attempts(challenge.id, challenge.max_attempts)
        if bumped is None:
            # Lost a race: either the attempts ran out or the challenge was replaced or used
            current = await self.store.get_active_challenge(request_id)
            if current is not None and current.id == challenge.id:
                return VerificationResult(VerificationOutcome.LOCKED_OUT, current, 0)
            latest = await self.latest_challenge(request_id)
            return VerificationResult(VerificationOutcome.NO_ACTIVE_CHALLENGE, latest)

        remaining = max(0, bumped.max_attempts - bumped.attempt_count)
        if not otp_code_matches(code or "", bumped.code_salt, bumped.code_hash, self.settings.otp_pepper):
            logger.info(
                f"Wrong OTP for challenge {bumped.id[:8]}... "
                f"(attempt {bumped.attempt_count}/{bumped.max_attempts})"
            )
            return VerificationResult(VerificationOutcome.WRONG_CODE, bumped, remaining)

        consumed = await self.store.consume_challenge(bumped.id, now)
        if consumed is None:
            latest = await self.latest_challenge(request_id)
            return VerificationResult(VerificationOutcome.NO_ACTIVE_CHALLENGE, latest)

        logger.info(f"OTP challenge {consumed.id[:8]}... verified")
        return VerificationResult(VerificationOutcome.SUCCESS, consumed, remaining)
