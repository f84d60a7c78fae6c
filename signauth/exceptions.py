"""
Exceptions raised by the signature engine, and the FastAPI handlers that
turn them into JSON error bodies.
"""
import logging
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from signauth.models import DeliveryStatus, SignatureStatus, SigningErrorCode, VerificationOutcome
from signauth.utils.logging import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Engine exceptions (framework independent)
# =============================================================================

class SignatureEngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code = 400
    code = SigningErrorCode.SERVER_ERROR
    public_message = "Request could not be processed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)


class NotFound(SignatureEngineError):
    """
    Unknown or malformed token.

    Deliberately carries no detail: the same body is returned whether the
    token never existed or was mistyped.
    """

    status_code = 404
    code = SigningErrorCode.SIGN_LINK_INVALID
    public_message = "This signing link does not exist or is no longer valid."

    def __init__(self):
        super().__init__()


class InvalidTransition(SignatureEngineError):
    """The request is terminal, or a transition guard failed."""

    status_code = 409
    code = SigningErrorCode.SIGN_REQUEST_FINALIZED

    _messages = {
        SignatureStatus.SIGNED: "This document has already been signed.",
        SignatureStatus.DECLINED: "This signature request has been declined.",
        SignatureStatus.EXPIRED: "This signature request has expired.",
        SignatureStatus.CANCELLED: "This signature request has been cancelled.",
    }

    def __init__(
        self,
        current_status: SignatureStatus,
        attempted: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            message
            or self._messages.get(current_status)
            or f"Operation not allowed while request is {current_status.value}."
        )


class TooManyRequests(SignatureEngineError):
    """Resend cooldown not elapsed or per-request issue cap reached."""

    status_code = 429
    code = SigningErrorCode.OTP_RATE_LIMITED

    def __init__(self, retry_after: int, reason: str = "cooldown", message: Optional[str] = None):
        self.retry_after = max(1, int(retry_after))
        self.reason = reason
        super().__init__(
            message or f"Too many requests. Please try again in {self.retry_after} seconds."
        )


class OtpVerificationFailed(SignatureEngineError):
    """
    Any OTP verification failure.

    The precise ``outcome`` is kept for the audit trail; callers only ever
    see the generic message so wrong-code and locked-out look the same.
    """

    status_code = 400
    code = SigningErrorCode.OTP_INVALID
    public_message = "Invalid or expired code."

    def __init__(self, outcome: VerificationOutcome):
        self.outcome = outcome
        super().__init__()


class IntegrityViolation(SignatureEngineError):
    """Document content changed between send time and signing time."""

    status_code = 409
    code = SigningErrorCode.DOCUMENT_INTEGRITY_VIOLATION
    public_message = "The document has changed since it was sent and cannot be signed."

    def __init__(self, expected_hash: Optional[str], actual_hash: Optional[str]):
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__()


class InvalidInput(SignatureEngineError):
    """Input passed schema validation but breaks a configured limit."""

    status_code = 422
    code = SigningErrorCode.VALIDATION_ERROR
    public_message = "Request validation failed"


class DeliveryFailed(SignatureEngineError):
    """
    Email collaborator could not deliver a message.

    Reported, never fatal: an issued challenge stays valid whether or not
    the email arrived.
    """

    status_code = 502
    code = SigningErrorCode.SERVER_ERROR
    public_message = "The message could not be delivered."

    def __init__(self, delivery_status: DeliveryStatus, reason: Optional[str] = None):
        self.delivery_status = delivery_status
        self.reason = reason
        super().__init__()


class DocumentUnavailable(SignatureEngineError):
    """Document store could not return the document content."""

    status_code = 502
    code = SigningErrorCode.SERVER_ERROR
    public_message = "The document is temporarily unavailable. Please try again later."


# =============================================================================
# HTTP-level exceptions (internal API)
# =============================================================================

class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            code="NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
        )


class RateLimitException(AppException):
    """Per-IP rate limit exceeded."""

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(
            status_code=429,
            code=SigningErrorCode.TOO_MANY_REQUESTS.value,
            message=message or f"Too many requests. Please try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
        )


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Build standardized error response."""
    response = {
        "error": True,
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        response["details"] = details
    return response


async def engine_exception_handler(
    request: Request,
    exc: SignatureEngineError,
) -> JSONResponse:
    """Map engine errors to their public representation."""
    logger.info(f"SignatureEngineError: {exc.code.value} ({type(exc).__name__})")

    content = build_error_response(exc.status_code, exc.code.value, exc.message)
    headers = None
    if isinstance(exc, InvalidTransition):
        content["status"] = exc.current_status.value
    elif isinstance(exc, TooManyRequests):
        content["retry_after_seconds"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handle application exceptions."""
    logger.warning(f"AppException: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(exc.status_code, exc.code, exc.message, exc.details),
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTPException: {exc.status_code} - {exc.detail}")

    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", "HTTP_ERROR")
        message = exc.detail.get("message", str(exc.detail))
    else:
        code = "HTTP_ERROR"
        message = str(exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(exc.status_code, code, message),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle request body and Pydantic validation errors."""
    raw_errors = exc.errors() if isinstance(exc, (RequestValidationError, ValidationError)) else []
    logger.warning(f"ValidationError: {len(raw_errors)} error(s)")

    errors = []
    for error in raw_errors:
        errors.append({
            "field": ".".join(str(loc) for loc in error.get("loc", ())),
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        })

    return JSONResponse(
        status_code=422,
        content=build_error_response(
            422,
            SigningErrorCode.VALIDATION_ERROR.value,
            "Request validation failed",
            {"errors": errors},
        ),
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {type(exc).__name__}")
    return JSONResponse(
        status_code=500,
        content=build_error_response(500, "INTERNAL_ERROR", "An unexpected error occurred"),
    )
