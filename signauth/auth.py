"""
Request authentication helpers.

The public signing endpoints are authenticated only by the link token
(resolved in the orchestrator). Internal endpoints require the shared
X-Internal-Secret header; the calling back-office service passes the
acting user in X-User-ID.
"""
import logging
import secrets as secrets_module
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from signauth.config import Settings, get_settings
from signauth.models import ActorContext

logger = logging.getLogger(__name__)

MAX_USER_AGENT_LENGTH = 500


class AuthenticationError(HTTPException):
    """Custom authentication error."""
    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(
            status_code=401,
            detail={"code": code, "message": message}
        )


class AuthorizationError(HTTPException):
    """Custom authorization error."""
    def __init__(self, message: str, code: str = "FORBIDDEN"):
        super().__init__(
            status_code=403,
            detail={"code": code, "message": message}
        )


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    # Cloud Run / load balancer headers
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    # Real IP header (some proxies)
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    # Direct connection
    if request.client:
        return request.client.host

    return "unknown"


def get_actor(request: Request) -> ActorContext:
    """Network origin of an external signer, for the audit trail."""
    user_agent = request.headers.get("User-Agent")
    return ActorContext(
        ip=get_client_ip(request),
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
    )


async def verify_internal_secret(
    x_internal_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Dependency to verify the internal API secret."""
    if not x_internal_secret:
        logger.warning("Internal endpoint called without X-Internal-Secret header")
        raise AuthenticationError("Internal secret required", "MISSING_INTERNAL_SECRET")

    if not settings.internal_api_secret:
        logger.error("INTERNAL_API_SECRET not configured")
        raise AuthenticationError("Internal authentication not configured", "INTERNAL_NOT_CONFIGURED")

    # Constant-time comparison to prevent timing attacks
    if not secrets_module.compare_digest(x_internal_secret, settings.internal_api_secret):
        logger.warning("Internal secret mismatch")
        raise AuthorizationError("Invalid internal secret", "INVALID_INTERNAL_SECRET")


def get_internal_actor(
    request: Request,
    x_user_id: Optional[str] = Header(None),
) -> ActorContext:
    """Actor for back-office calls: the acting user plus network origin."""
    actor = get_actor(request)
    actor.user_id = x_user_id
    return actor
