"""
Signature Authorization Service - Main FastAPI Application
Token-linked signature requests with email OTP confirmation.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from signauth import __version__
from signauth.config import get_cors_origins, get_settings
from signauth.exceptions import (
    AppException,
    SignatureEngineError,
    app_exception_handler,
    engine_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from signauth.routers import health, internal, signing
from signauth.utils.logging import RequestIdMiddleware, get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(
        f"Starting Signature Authorization Service v{__version__} "
        f"({settings.environment}, storage={settings.storage_backend})"
    )
    yield
    logger.info("Shutting down Signature Authorization Service")


app = FastAPI(
    title="Signature Authorization Service",
    description="""Authorizes signatures on documents through a one-time link and an email code.

## Authentication

### 1. Public signing link
`/v1/sign/{token}` endpoints are authenticated by the link token alone.
A one-time code sent to the signer's email confirms the signature.

### 2. Internal secret
Back-office endpoints under `/internal/v1/signatures` require:
- `X-Internal-Secret`: shared service secret
- `X-User-ID`: acting back-office user (optional, recorded in the audit trail)
""",
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "signing", "description": "Signing operations (public, token-based)"},
        {"name": "internal", "description": "Back-office management of signature requests"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(SignatureEngineError, engine_exception_handler)
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(health.router)
app.include_router(signing.router)   # Public signing API
app.include_router(internal.router)  # Back-office API


# Custom OpenAPI schema with security schemes
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "InternalSecret": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Internal-Secret",
            "description": "Shared secret for back-office calls",
        },
        "UserID": {
            "type": "apiKey",
            "in": "header",
            "name": "X-User-ID",
            "description": "Acting back-office user (recorded in the audit trail)",
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "signauth.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=True,
    )
