"""Outgoing email delivery adapters."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Protocol

import httpx
import structlog

from app.config import get_settings

logger = structlog.get_logger(__name__)


class EmailDeliveryError(Exception):
    """Raised when an email could not be handed to the delivery backend."""

    def __init__(self, detail: str, code: str = "email_delivery_failed", status_code: int = 502):
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


class EmailSender(Protocol):
    """Contract for email delivery adapters."""

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> None:
        """Deliver one email or raise EmailDeliveryError."""


@dataclass(frozen=True)
class SMTPEmailSender:
    """SMTP sender, typically targeting a local Mailhog."""

    host: str
    port: int
    email_from: str

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> None:
        """Send an email through SMTP without blocking the event loop."""
        try:
            await asyncio.to_thread(
                self._send_blocking, to=to, subject=subject, text=text, html=html
            )
        except (OSError, smtplib.SMTPException) as exc:
            logger.error("email_send_failed", backend="smtp", error=str(exc))
            raise EmailDeliveryError("Unable to send email.") from exc

    def _send_blocking(self, to: str, subject: str, text: str, html: str | None) -> None:
        """Send a multipart email using the stdlib SMTP client."""
        message = EmailMessage()
        message["From"] = self.email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.send_message(message)


@dataclass(frozen=True)
class ResendEmailSender:
    """Sender for the Resend HTTP API."""

    api_key: str
    api_url: str
    email_from: str

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> None:
        """Post the email to Resend and fail on any non-2xx response."""
        payload = {"from": self.email_from, "to": to, "subject": subject, "text": text}
        if html:
            payload["html"] = html
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("email_send_failed", backend="resend", error=str(exc))
            raise EmailDeliveryError("Unable to send email.") from exc


@lru_cache
def get_email_sender() -> EmailSender:
    """Build and cache the configured email sender."""
    settings = get_settings().email
    if settings.backend == "resend":
        if settings.resend_api_key is None:
            raise RuntimeError("email.resend_api_key is required for the resend backend.")
        return ResendEmailSender(
            api_key=settings.resend_api_key.get_secret_value(),
            api_url=settings.resend_api_url,
            email_from=settings.email_from,
        )
    return SMTPEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        email_from=settings.email_from,
    )
