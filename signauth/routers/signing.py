"""
Public Signing API Router.
Paths: /v1/sign/{token}

The link token is the only credential. Unknown tokens get the same 404
body on every endpoint; OTP failures get one generic 400 body.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Path, Request

from signauth.auth import get_actor, get_client_ip
from signauth.exceptions import RateLimitException
from signauth.models import (
    DeclineRequest,
    DeclineResponse,
    OtpRequestResponse,
    SigningErrorResponse,
    SigningStatusResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
)
from signauth.services.orchestrator import RequestOrchestrator, get_orchestrator
from signauth.utils.logging import get_logger
from signauth.utils.rate_limiter import RateLimiter, get_otp_request_limiter, get_verify_limiter

logger = get_logger(__name__)

router = APIRouter(
    prefix="/v1/sign",
    tags=["signing"],
)

TOKEN_PATH = Path(..., min_length=1, max_length=512, description="Public signing token from the link")

ERROR_RESPONSES = {
    404: {"model": SigningErrorResponse, "description": "Unknown or invalid signing link"},
    409: {"model": SigningErrorResponse, "description": "Request already finalized"},
}


def enforce_ip_limit(limiter: RateLimiter, request: Request, action: str) -> None:
    client_ip = get_client_ip(request)
    allowed, retry_after = limiter.is_allowed(f"{action}:{client_ip}")
    if not allowed:
        logger.warning(f"Per-IP limit hit for {action}, retry after {retry_after}s")
        raise RateLimitException(retry_after)


@router.get(
    "/{token}",
    response_model=SigningStatusResponse,
    responses=ERROR_RESPONSES,
)
async def get_signing_status(
    request: Request,
    token: str = TOKEN_PATH,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    """
    Current status of a signature request.

    Records a VIEWED event once per viewing session. Overdue requests are
    reported as EXPIRED.
    """
    return await orchestrator.get_status(token, get_actor(request))


@router.post(
    "/{token}/request-otp",
    response_model=OtpRequestResponse,
    responses={
        **ERROR_RESPONSES,
        429: {"model": SigningErrorResponse, "description": "Resend cooldown or limit reached"},
    },
)
async def request_otp(
    request: Request,
    token: str = TOKEN_PATH,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_otp_request_limiter),
):
    """
    Send a one-time code to the signer's email.

    `delivery_status` is "failed" when the mail transport could not take
    the message; the code stays valid and a resend is possible after the
    cooldown.
    """
    enforce_ip_limit(limiter, request, "request-otp")
    return await orchestrator.request_otp(token, get_actor(request))


@router.post(
    "/{token}/verify",
    response_model=VerifyOtpResponse,
    responses={
        **ERROR_RESPONSES,
        400: {"model": SigningErrorResponse, "description": "Invalid or expired code"},
    },
)
async def verify_and_sign(
    body: VerifyOtpRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    token: str = TOKEN_PATH,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_verify_limiter),
):
    """Verify the one-time code and sign the document."""
    enforce_ip_limit(limiter, request, "verify")
    return await orchestrator.verify_and_sign(
        token,
        body.otp,
        get_actor(request),
        schedule=background_tasks.add_task,
    )


@router.post(
    "/{token}/decline",
    response_model=DeclineResponse,
    responses=ERROR_RESPONSES,
)
async def decline(
    request: Request,
    background_tasks: BackgroundTasks,
    body: DeclineRequest = DeclineRequest(),
    token: str = TOKEN_PATH,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    """Decline to sign, with an optional free-text reason."""
    return await orchestrator.decline(
        token,
        body.reason,
        get_actor(request),
        schedule=background_tasks.add_task,
    )
