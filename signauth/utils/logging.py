"""
Logging configuration with request correlation.
Structured JSON logs for Cloud Logging in production.

PII Protection:
- Never log raw public tokens, OTP codes, salts or email addresses
- Use fingerprints (sha256[:8]) for correlation
"""
import hashlib
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from signauth.utils.datetime_utils import utc_now


def fingerprint(value: Optional[str], prefix: str = "") -> str:
    """
    Safe 8-char fingerprint of a sensitive value.

    Example:
        fingerprint("secret_token_123", "tok_") -> "tok_a1b2c3d4"
    """
    if not value:
        return f"{prefix}none" if prefix else "none"
    fp = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{fp}" if prefix else fp


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
signature_request_id_var: ContextVar[Optional[str]] = ContextVar("signature_request_id", default=None)
token_fp_var: ContextVar[Optional[str]] = ContextVar("token_fp", default=None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def set_context(
    signature_request_id: Optional[str] = None,
    token_fp: Optional[str] = None,
) -> None:
    """Attach correlation ids to every log line emitted for this request."""
    if signature_request_id:
        signature_request_id_var.set(signature_request_id)
    if token_fp:
        token_fp_var.set(token_fp)


def clear_context() -> None:
    request_id_var.set(None)
    signature_request_id_var.set(None)
    token_fp_var.set(None)


class CloudLoggingFormatter(logging.Formatter):
    """JSON formatter compatible with Google Cloud Logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "timestamp": utc_now().isoformat().replace("+00:00", "Z"),
            "logger": record.name,
            "logging.googleapis.com/sourceLocation": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        request_id = request_id_var.get()
        if request_id:
            log_entry["logging.googleapis.com/trace"] = request_id
            log_entry["request_id"] = request_id

        signature_request_id = signature_request_id_var.get()
        if signature_request_id:
            log_entry["signature_request_id"] = signature_request_id

        token_fp = token_fp_var.get()
        if token_fp:
            log_entry["token_fp"] = token_fp

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data

        return json.dumps(log_entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        prefix = f"[{record.levelname}] [{request_id[:8] if request_id else '-'}]"

        signature_request_id = signature_request_id_var.get()
        if signature_request_id:
            prefix += f" [req:{signature_request_id[:8]}]"
        token_fp = token_fp_var.get()
        if token_fp:
            prefix += f" [tok:{token_fp}]"

        message = f"{prefix} {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(environment: str = "development", level: int = logging.INFO) -> None:
    """
    Configure the root logger.
    - production: JSON structured logs
    - anything else: human-readable lines
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if environment == "production":
        handler.setFormatter(CloudLoggingFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    for noisy in ("urllib3", "google", "httpx", "httpcore", "hpack"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request_id to each request and fingerprints the signing token
    found in ``/v1/sign/{token}`` paths.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)

        path_parts = request.url.path.strip("/").split("/")
        if len(path_parts) >= 3 and path_parts[0] == "v1" and path_parts[1] == "sign":
            token_fp_var.set(fingerprint(path_parts[2], "tok_"))

        request.state.request_id = request_id

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_context()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
