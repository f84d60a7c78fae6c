from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore")


# Enums
class SignatureStatus(str, Enum):
    PENDING = "PENDING"
    OTP_ISSUED = "OTP_ISSUED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SignatureStatus.SIGNED,
    SignatureStatus.DECLINED,
    SignatureStatus.EXPIRED,
    SignatureStatus.CANCELLED,
})
OPEN_STATUSES = frozenset({SignatureStatus.PENDING, SignatureStatus.OTP_ISSUED})


class AuditEventType(str, Enum):
    CREATED = "CREATED"
    VIEWED = "VIEWED"
    OTP_REQUESTED = "OTP_REQUESTED"
    OTP_REQUEST_REJECTED = "OTP_REQUEST_REJECTED"
    OTP_DELIVERY_FAILED = "OTP_DELIVERY_FAILED"
    OTP_VERIFY_FAILED = "OTP_VERIFY_FAILED"
    OTP_VERIFY_SUCCEEDED = "OTP_VERIFY_SUCCEEDED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    TRANSITION_REJECTED = "TRANSITION_REJECTED"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    SIGNED_DOCUMENT_ATTACHED = "SIGNED_DOCUMENT_ATTACHED"


class VerificationOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    WRONG_CODE = "WRONG_CODE"
    EXPIRED = "EXPIRED"
    LOCKED_OUT = "LOCKED_OUT"
    NO_ACTIVE_CHALLENGE = "NO_ACTIVE_CHALLENGE"


class DeliveryStatus(str, Enum):
    """Status of an OTP email dispatch."""
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email transport not configured


# Domain records
class SignatureRequest(BaseModel):
    id: str
    token_hash: str
    document_type: str
    document_title: str
    document_url: str
    document_id: Optional[str] = None
    signed_document_url: Optional[str] = None
    content_hash: Optional[str] = None
    signer_name: str
    signer_email: str
    signer_phone: Optional[str] = None
    requester_id: str
    requester_email: Optional[str] = None
    message: Optional[str] = None
    status: SignatureStatus = SignatureStatus.PENDING
    expires_at: datetime
    signed_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    otp_issue_count: int = 0
    last_otp_issued_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class OtpChallenge(BaseModel):
    id: str
    request_id: str
    code_salt: str
    code_hash: str
    sent_to: str
    issued_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    max_attempts: int = 5
    consumed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.consumed_at is None and self.superseded_at is None


class AuditEvent(BaseModel):
    id: Optional[str] = None
    request_id: str
    event_type: AuditEventType
    occurred_at: datetime
    actor_ip: Optional[str] = None
    actor_user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ActorContext(BaseModel):
    """Who is calling: network origin of an external signer or an internal user."""
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None


# Public signing API models
class SigningStatusResponse(BaseModel):
    """GET /v1/sign/{token} response."""
    document_title: str
    document_type: str
    signer_name: str
    signer_email_masked: str
    status: SignatureStatus
    expires_at: datetime
    expires_in_seconds: int = 0
    message: Optional[str] = None
    signed_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    signed_document_url: Optional[str] = None


class OtpRequestResponse(BaseModel):
    """POST /v1/sign/{token}/request-otp response."""
    masked_email_hint: str
    expires_in_seconds: int
    retry_after_seconds: int
    delivery_status: DeliveryStatus = DeliveryStatus.SENT


class VerifyOtpRequest(BaseRequest):
    """POST /v1/sign/{token}/verify request."""
    otp: str = Field(..., min_length=6, max_length=6)

    @field_validator("otp", mode="before")
    @classmethod
    def validate_otp(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v.isdigit():
                raise ValueError("OTP code must contain only digits")
        return v


class VerifyOtpResponse(BaseModel):
    status: SignatureStatus = SignatureStatus.SIGNED
    signed_at: datetime


class DeclineRequest(BaseRequest):
    """POST /v1/sign/{token}/decline request."""
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def blank_reason_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class DeclineResponse(BaseModel):
    status: SignatureStatus = SignatureStatus.DECLINED
    declined_at: datetime


class SigningErrorCode(str, Enum):
    """Error codes returned by the signing endpoints."""
    SIGN_LINK_INVALID = "SIGN_LINK_INVALID"
    SIGN_REQUEST_FINALIZED = "SIGN_REQUEST_FINALIZED"
    OTP_INVALID = "OTP_INVALID"
    OTP_RATE_LIMITED = "OTP_RATE_LIMITED"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    DOCUMENT_INTEGRITY_VIOLATION = "DOCUMENT_INTEGRITY_VIOLATION"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SERVER_ERROR = "SERVER_ERROR"


class SigningErrorResponse(BaseModel):
    """Error body for signing endpoints."""
    error: bool = True
    code: SigningErrorCode
    message: str
    request_id: Optional[str] = None
    status: Optional[SignatureStatus] = None
    retry_after_seconds: Optional[int] = None


# Internal (back-office) API models
class CreateSignatureRequest(BaseRequest):
    document_type: str = Field(..., min_length=1, max_length=50)
    document_id: Optional[str] = Field(None, max_length=100)
    document_title: str = Field(..., min_length=1, max_length=255)
    document_url: str = Field(..., min_length=1, max_length=2000)
    signer_name: str = Field(..., min_length=1, max_length=200)
    signer_email: str = Field(..., min_length=3, max_length=254)
    signer_phone: Optional[str] = Field(None, max_length=20)
    requester_id: str = Field(..., min_length=1, max_length=100)
    requester_email: Optional[str] = Field(None, max_length=254)
    message: Optional[str] = Field(None, max_length=1000)
    expires_in_days: Optional[int] = Field(None, ge=1)

    @field_validator("signer_email", "requester_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain or " " in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("document_url")
    @classmethod
    def validate_document_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("document_url must be an http(s) URL")
        return v


class CreateSignatureResponse(BaseModel):
    id: str
    public_token: str
    sign_url: str
    status: SignatureStatus
    expires_at: datetime
    content_hash: Optional[str] = None


class SignatureRequestSummary(BaseModel):
    id: str
    document_type: str
    document_title: str
    signer_name: str
    signer_email: str
    requester_id: str
    status: SignatureStatus
    expires_at: datetime
    created_at: datetime
    signed_at: Optional[datetime] = None


class SignatureRequestListResponse(BaseModel):
    items: List[SignatureRequestSummary]
    total: int
    page: int
    limit: int


class OtpChallengeSummary(BaseModel):
    """Challenge history without code material."""
    id: str
    sent_to: str
    issued_at: datetime
    expires_at: datetime
    attempt_count: int
    max_attempts: int
    consumed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None


class SignatureRequestDetail(BaseModel):
    id: str
    document_type: str
    document_id: Optional[str] = None
    document_title: str
    document_url: str
    signed_document_url: Optional[str] = None
    content_hash: Optional[str] = None
    signer_name: str
    signer_email: str
    signer_phone: Optional[str] = None
    requester_id: str
    message: Optional[str] = None
    status: SignatureStatus
    expires_at: datetime
    signed_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    otp_issue_count: int
    created_at: datetime
    challenges: List[OtpChallengeSummary] = Field(default_factory=list)
    audit_trail: List[AuditEvent] = Field(default_factory=list)


class AttachSignedDocumentRequest(BaseRequest):
    signed_document_url: str = Field(..., min_length=1, max_length=2000)


class CancelResponse(BaseModel):
    id: str
    status: SignatureStatus
    cancelled_at: datetime


class SweepResponse(BaseModel):
    expired: int
    request_ids: List[str]


# Error Response
class ErrorResponse(BaseModel):
    error: bool = True
    code: str
    message: str
    details: Optional[dict] = None
    request_id: Optional[str] = None
