"""
Configuration module - environment variables with Google Secret Manager
overrides for secrets.
"""
import json
import logging
import os
from functools import lru_cache
from typing import Any, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch a secret from Google Secret Manager.
    Returns None when unavailable so env vars stay in effect.
    """
    project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")
    if not project:
        return None

    try:
        from google.cloud import secretmanager

        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")

    # Storage
    storage_backend: str = Field(default="memory", alias="STORAGE_BACKEND")
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_key: str = Field(default="", alias="SUPABASE_SERVICE_KEY")

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="firma@example.com", alias="RESEND_FROM_EMAIL")
    email_from_name: str = Field(default="Firma documenti", alias="EMAIL_FROM_NAME")
    email_send_timeout_seconds: float = Field(
        default=10.0,
        alias="EMAIL_SEND_TIMEOUT_SECONDS",
        description="Upper bound for awaiting OTP email delivery inside a request",
    )

    # Document store
    document_fetch_timeout_seconds: float = Field(default=15.0, alias="DOCUMENT_FETCH_TIMEOUT_SECONDS")

    # App
    app_base_url: str = Field(default="http://localhost:8000", alias="APP_BASE_URL")
    sign_app_url: str = Field(default="", alias="SIGN_APP_URL")
    signing_token_salt: str = Field(default="", alias="SIGNING_TOKEN_SALT")
    otp_pepper: str = Field(default="", alias="OTP_PEPPER")
    internal_api_secret: str = Field(default="", alias="INTERNAL_API_SECRET")

    # Signature requests
    default_expires_in_days: int = Field(default=14, alias="DEFAULT_EXPIRES_IN_DAYS")
    max_expires_in_days: int = Field(default=90, alias="MAX_EXPIRES_IN_DAYS")
    view_session_window_seconds: int = Field(
        default=1800,
        alias="VIEW_SESSION_WINDOW_SECONDS",
        description="Repeat views from the same viewer inside this window are not audited again",
    )
    sweep_batch_size: int = Field(default=200, alias="SWEEP_BATCH_SIZE")

    # OTP
    otp_ttl_seconds: int = Field(
        default=600,
        alias="OTP_TTL_SECONDS",
        description="Lifetime of an issued code (default 10 min)",
    )
    otp_min_resend_seconds: int = Field(
        default=60,
        alias="OTP_MIN_RESEND_SECONDS",
        description="Minimum seconds between issuances for the same request (default 60s)",
    )
    otp_max_attempts: int = Field(default=5, alias="OTP_MAX_ATTEMPTS")
    otp_max_issues_per_request: int = Field(default=5, alias="OTP_MAX_ISSUES_PER_REQUEST")

    # Per-IP throttling of public endpoints
    ip_otp_request_limit: int = Field(default=5, alias="IP_OTP_REQUEST_LIMIT")
    ip_verify_limit: int = Field(default=10, alias="IP_VERIFY_LIMIT")
    ip_rate_window_seconds: int = Field(default=60, alias="IP_RATE_WINDOW_SECONDS")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from a JSON list, CSV or semicolon-separated string."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("memory", "supabase"):
            raise ValueError(f"Unsupported STORAGE_BACKEND: {v}")
        return v

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._load_secrets_from_gcp()

    def _load_secrets_from_gcp(self):
        """Override secret settings with Secret Manager values if available."""
        if not (self.gcp_project_id or os.environ.get("GOOGLE_CLOUD_PROJECT")):
            return

        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_service_key": "SUPABASE_SERVICE_KEY",
            "resend_api_key": "RESEND_API_KEY",
            "signing_token_salt": "SIGNING_TOKEN_SALT",
            "otp_pepper": "OTP_PEPPER",
            "internal_api_secret": "INTERNAL_API_SECRET",
        }
        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode="after")
    def validate_production(self) -> "Settings":
        """Flag configuration that is unsafe outside development."""
        if self.environment != "production":
            return self

        if not self.signing_token_salt or not self.otp_pepper:
            logger.error("CRITICAL: SIGNING_TOKEN_SALT and OTP_PEPPER must be set in production!")
        if self.storage_backend == "memory":
            logger.error("CRITICAL: STORAGE_BACKEND=memory in production; state is lost on restart!")
        if not self.sign_app_url.startswith("https://"):
            logger.error(f"CRITICAL: SIGN_APP_URL ('{self.sign_app_url}') must use HTTPS in production!")
        return self

    def get_sign_app_url(self) -> str:
        """
        Public frontend URL used to build signing links in emails.
        Falls back to app_base_url (development only).
        """
        if self.sign_app_url:
            return self.sign_app_url.rstrip("/")
        if self.environment != "development":
            logger.warning(
                f"SIGN_APP_URL not set, falling back to APP_BASE_URL ({self.app_base_url})"
            )
        return self.app_base_url.rstrip("/")

    def build_sign_url(self, token: str) -> str:
        return f"{self.get_sign_app_url()}/sign/{token}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Development origins (only in non-production)
DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def get_cors_origins() -> List[str]:
    """Allowed CORS origins: configured list plus dev origins outside production."""
    settings = get_settings()
    origins = set(settings.allowed_origins)
    if settings.environment != "production":
        origins.update(DEV_CORS_ORIGINS)
    return sorted(origins)
