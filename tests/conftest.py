"""
Pytest configuration and fixtures.
"""
import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from signauth.config import Settings, get_settings
from signauth.email import EmailDeliveryStatus, EmailResult
from signauth.exceptions import DocumentUnavailable
from signauth.models import ActorContext, CreateSignatureRequest
from signauth.services.orchestrator import RequestOrchestrator, get_orchestrator
from signauth.store.memory import InMemorySignatureStore
from signauth.utils.rate_limiter import RateLimiter, get_otp_request_limiter, get_verify_limiter
from signauth.utils.security import compute_bytes_hash

DOCUMENT_URL = "https://files.example.com/contracts/contract-001.pdf"
DOCUMENT_BYTES = b"%PDF-1.7 contract body"
INTERNAL_SECRET = "test-internal-secret"


class FrozenClock:
    """Controllable clock; call it to get the current time."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmailService:
    """Records outgoing mail instead of calling Resend."""

    def __init__(self):
        self.sent: List[Dict] = []
        self.status = EmailDeliveryStatus.SENT

    def _result(self) -> EmailResult:
        return EmailResult(
            success=self.status == EmailDeliveryStatus.SENT,
            message_id="msg_test" if self.status == EmailDeliveryStatus.SENT else None,
            error=None if self.status == EmailDeliveryStatus.SENT else "transport down",
            delivery_status=self.status,
            total_attempts=1,
        )

    async def send_otp_code(self, to_email: str, code: str, document_title: str) -> EmailResult:
        self.sent.append({"kind": "otp", "to": to_email, "code": code, "title": document_title})
        return self._result()

    async def send_signed_notification(self, to_email, document_title, signer_name, signed_at) -> EmailResult:
        self.sent.append({"kind": "signed", "to": to_email, "title": document_title})
        return self._result()

    async def send_declined_notification(self, to_email, document_title, signer_name, reason) -> EmailResult:
        self.sent.append({"kind": "declined", "to": to_email, "title": document_title, "reason": reason})
        return self._result()

    @property
    def last_code(self) -> Optional[str]:
        codes = [m["code"] for m in self.sent if m["kind"] == "otp"]
        return codes[-1] if codes else None

    def of_kind(self, kind: str) -> List[Dict]:
        return [m for m in self.sent if m["kind"] == kind]


class FakeDocumentStore:
    """Serves document bytes from memory."""

    def __init__(self):
        self.documents: Dict[str, bytes] = {DOCUMENT_URL: DOCUMENT_BYTES}
        self.fetch_count = 0

    async def fetch_content_and_hash(self, document_url: str):
        self.fetch_count += 1
        await asyncio.sleep(0)
        content = self.documents.get(document_url)
        if content is None:
            raise DocumentUnavailable()
        return content, compute_bytes_hash(content)


@pytest.fixture
def settings():
    """Settings with test secrets and default engine limits."""
    return Settings(
        signing_token_salt="test-salt",
        otp_pepper="test-pepper",
        internal_api_secret=INTERNAL_SECRET,
        resend_api_key="",
        sign_app_url="https://sign.example.com",
        environment="test",
        storage_backend="memory",
        gcp_project_id="",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemorySignatureStore()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def document_store():
    return FakeDocumentStore()


@pytest.fixture
def orchestrator(store, settings, email_service, document_store, clock):
    return RequestOrchestrator(
        store=store,
        settings=settings,
        email_service=email_service,
        document_store=document_store,
        clock=clock,
    )


@pytest.fixture
def signer():
    return ActorContext(ip="203.0.113.10", user_agent="Mozilla/5.0 (TestBrowser)")


@pytest.fixture
def back_office():
    return ActorContext(ip="10.0.0.5", user_agent="backoffice/1.0", user_id="user-42")


def build_create_payload(**overrides) -> CreateSignatureRequest:
    data = {
        "document_type": "contract",
        "document_id": "doc-001",
        "document_title": "Contratto di fornitura",
        "document_url": DOCUMENT_URL,
        "signer_name": "Maria Rossi",
        "signer_email": "maria.rossi@example.com",
        "requester_id": "user-42",
        "requester_email": "office@example.com",
        "message": "Please sign by Friday.",
    }
    data.update(overrides)
    return CreateSignatureRequest(**data)


@pytest.fixture
def make_request(orchestrator, back_office):
    """Factory: ``created = await make_request(**overrides)``."""
    async def _make(**overrides):
        return await orchestrator.create_request(build_create_payload(**overrides), back_office)
    return _make


@pytest.fixture
def client(orchestrator, settings):
    """TestClient wired to the in-memory orchestrator."""
    from signauth.main import app

    otp_limiter = RateLimiter(max_requests=5, window_seconds=60)
    verify_limiter = RateLimiter(max_requests=10, window_seconds=60)

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_otp_request_limiter] = lambda: otp_limiter
    app.dependency_overrides[get_verify_limiter] = lambda: verify_limiter
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers():
    return {"X-Internal-Secret": INTERNAL_SECRET, "X-User-ID": "user-42"}


@pytest.fixture
def mock_supabase():
    """Create mock Supabase client with a chainable query builder."""
    client = MagicMock()

    table_mock = MagicMock()
    for method in ("select", "insert", "update", "eq", "in_", "is_", "lte", "or_", "order", "limit", "range"):
        getattr(table_mock, method).return_value = table_mock
    table_mock.execute.return_value = MagicMock(data=[], count=0)

    client.table.return_value = table_mock
    return client
