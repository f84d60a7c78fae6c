"""
Email module using Resend for OTP delivery and lifecycle notifications.

Includes reliable delivery with retry logic. Message bodies are small HTML
snippets rendered here; the document itself is never attached.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from html import escape
from typing import List, Optional

import httpx

from signauth.config import Settings, get_settings

logger = logging.getLogger(__name__)


# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = [0, 2, 4]  # immediate, 2s, 4s


class EmailDeliveryStatus(str, Enum):
    """Email delivery status for tracking."""
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email not configured


@dataclass
class EmailAttempt:
    """Record of a single email send attempt."""
    attempt_number: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class EmailResult:
    """Result of email send operation with delivery tracking."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.FAILED
    attempts: List[EmailAttempt] = field(default_factory=list)
    total_attempts: int = 0

    @property
    def is_delivered(self) -> bool:
        return self.delivery_status == EmailDeliveryStatus.SENT

    @property
    def is_failed(self) -> bool:
        return self.delivery_status == EmailDeliveryStatus.FAILED


@dataclass
class RenderedEmail:
    subject: str
    html: str


def _layout(title: str, body: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:560px;margin:0 auto\">"
        f"<h2 style=\"color:#111\">{escape(title)}</h2>"
        f"{body}"
        "<p style=\"color:#888;font-size:12px\">This is an automated message, please do not reply.</p>"
        "</div>"
    )


def render_otp_email(code: str, document_title: str, ttl_minutes: int) -> RenderedEmail:
    body = (
        f"<p>Your verification code to sign <strong>{escape(document_title)}</strong> is:</p>"
        f"<p style=\"font-size:28px;letter-spacing:6px;font-weight:bold\">{escape(code)}</p>"
        f"<p>The code is valid for {ttl_minutes} minutes. If you did not request it, ignore this email.</p>"
    )
    return RenderedEmail(
        subject=f"Verification code to sign: {document_title}",
        html=_layout("Signature verification code", body),
    )


def render_signed_email(document_title: str, signer_name: str, signed_at: datetime) -> RenderedEmail:
    body = (
        f"<p><strong>{escape(signer_name)}</strong> signed "
        f"<strong>{escape(document_title)}</strong> on {signed_at.strftime('%d/%m/%Y %H:%M')} UTC.</p>"
    )
    return RenderedEmail(
        subject=f"Document signed: {document_title}",
        html=_layout("Document signed", body),
    )


def render_declined_email(document_title: str, signer_name: str, reason: Optional[str]) -> RenderedEmail:
    body = (
        f"<p><strong>{escape(signer_name)}</strong> declined to sign "
        f"<strong>{escape(document_title)}</strong>.</p>"
    )
    if reason:
        body += f"<p>Reason: {escape(reason)}</p>"
    return RenderedEmail(
        subject=f"Signature declined: {document_title}",
        html=_layout("Signature declined", body),
    )


class EmailService:
    """Email service using the Resend HTTP API."""

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        return bool(self.settings.resend_api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
    ) -> EmailResult:
        """
        Send email via Resend with retry logic.

        - 3 attempts with backoff (0s, 2s, 4s)
        - never raises; failures come back as ``EmailDeliveryStatus.FAILED``

        Returns:
            EmailResult with delivery_status and attempt history
        """
        email_fp = hashlib.sha256(to_email.encode()).hexdigest()[:8]

        if not self.is_configured():
            logger.warning(f"Resend API key not configured, skipping email to {email_fp}")
            return EmailResult(
                success=False,
                error="Email service not configured",
                delivery_status=EmailDeliveryStatus.SKIPPED,
            )

        payload = {
            "from": f"{self.settings.email_from_name} <{self.settings.resend_from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        attempts: List[EmailAttempt] = []
        last_error: Optional[str] = None

        for attempt_num in range(1, MAX_RETRY_ATTEMPTS + 1):
            if attempt_num > 1:
                delay = RETRY_DELAYS_SECONDS[min(attempt_num - 1, len(RETRY_DELAYS_SECONDS) - 1)]
                logger.info(f"Email retry {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp}, waiting {delay}s")
                await asyncio.sleep(delay)

            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.RESEND_API_URL,
                        json=payload,
                        headers=headers,
                        timeout=30.0,
                    )

                if response.status_code in (200, 201):
                    message_id = response.json().get("id")
                    attempts.append(EmailAttempt(
                        attempt_number=attempt_num,
                        success=True,
                        message_id=message_id,
                    ))
                    logger.info(f"Email sent to {email_fp} on attempt {attempt_num}, message_id: {message_id}")
                    return EmailResult(
                        success=True,
                        message_id=message_id,
                        delivery_status=EmailDeliveryStatus.SENT,
                        attempts=attempts,
                        total_attempts=attempt_num,
                    )

                last_error = f"API error {response.status_code}: {response.text[:200]}"

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
            except httpx.HTTPError as e:
                last_error = str(e)

            attempts.append(EmailAttempt(attempt_number=attempt_num, success=False, error=last_error))
            logger.warning(f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} failed: {last_error}")

        logger.error(
            f"Email to {email_fp} failed after {MAX_RETRY_ATTEMPTS} attempts. Last error: {last_error}"
        )
        return EmailResult(
            success=False,
            error=last_error,
            delivery_status=EmailDeliveryStatus.FAILED,
            attempts=attempts,
            total_attempts=MAX_RETRY_ATTEMPTS,
        )

    async def send_otp_code(self, to_email: str, code: str, document_title: str) -> EmailResult:
        rendered = render_otp_email(code, document_title, self.settings.otp_ttl_seconds // 60)
        return await self.send_email(to_email, rendered.subject, rendered.html)

    async def send_signed_notification(
        self,
        to_email: str,
        document_title: str,
        signer_name: str,
        signed_at: datetime,
    ) -> EmailResult:
        rendered = render_signed_email(document_title, signer_name, signed_at)
        return await self.send_email(to_email, rendered.subject, rendered.html)

    async def send_declined_notification(
        self,
        to_email: str,
        document_title: str,
        signer_name: str,
        reason: Optional[str],
    ) -> EmailResult:
        rendered = render_declined_email(document_title, signer_name, reason)
        return await self.send_email(to_email, rendered.subject, rendered.html)


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


__all__ = [
    "EmailService",
    "EmailResult",
    "EmailDeliveryStatus",
    "EmailAttempt",
    "RenderedEmail",
    "get_email_service",
    "render_otp_email",
    "render_signed_email",
    "render_declined_email",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
]
