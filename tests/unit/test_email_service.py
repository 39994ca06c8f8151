"""Unit tests for email delivery adapters."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from app.services import email_service
from app.services.email_service import EmailDeliveryError, ResendEmailSender, SMTPEmailSender


@pytest.mark.asyncio
async def test_smtp_sender_wraps_connection_failures() -> None:
    sender = SMTPEmailSender(host="127.0.0.1", port=1, email_from="hello@example.com")

    with pytest.raises(EmailDeliveryError) as exc_info:
        await sender.send_email(to="kody@example.com", subject="Hi", text="Hello")

    assert exc_info.value.code == "email_delivery_failed"
    assert exc_info.value.status_code == 502


def _patch_transport(monkeypatch, handler: Any) -> None:
    real_client = httpx.AsyncClient

    def _client(*args: Any, **kwargs: Any) -> httpx.AsyncClient:
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(email_service.httpx, "AsyncClient", _client)


@pytest.mark.asyncio
async def test_resend_sender_posts_message_with_bearer_token(monkeypatch) -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "email-1"})

    _patch_transport(monkeypatch, _handler)
    sender = ResendEmailSender(
        api_key="re_test", api_url="https://api.resend.test/emails", email_from="hello@example.com"
    )

    await sender.send_email(to="kody@example.com", subject="Hi", text="Hello")

    assert len(seen) == 1
    assert seen[0].headers["authorization"] == "Bearer re_test"
    assert b'"to":"kody@example.com"' in seen[0].content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_resend_sender_raises_on_error_status(monkeypatch) -> None:
    _patch_transport(monkeypatch, lambda request: httpx.Response(500, json={"error": "boom"}))
    sender = ResendEmailSender(
        api_key="re_test", api_url="https://api.resend.test/emails", email_from="hello@example.com"
    )

    with pytest.raises(EmailDeliveryError):
        await sender.send_email(to="kody@example.com", subject="Hi", text="Hello")
