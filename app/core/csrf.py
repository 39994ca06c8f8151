"""Double-submit CSRF tokens and the signup honeypot check."""

from __future__ import annotations

import hmac
import secrets

from fastapi import Request

CSRF_COOKIE_NAME = "en_csrf"
CSRF_HEADER_NAME = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class RequestGuardError(Exception):
    """Raised when a submission fails an anti-forgery or anti-bot check."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


def generate_csrf_token() -> str:
    """Generate a random CSRF token for the double-submit cookie."""
    return secrets.token_urlsafe(32)


def validate_csrf(request: Request) -> None:
    """Require the CSRF header to match the CSRF cookie on unsafe methods."""
    if request.method.upper() in SAFE_METHODS:
        return
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME, "")
    header_token = request.headers.get(CSRF_HEADER_NAME, "")
    if not cookie_token or not header_token:
        raise RequestGuardError("Missing CSRF token.", "invalid_csrf_token", 403)
    if not hmac.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8")):
        raise RequestGuardError("Invalid CSRF token.", "invalid_csrf_token", 403)


async def require_csrf(request: Request) -> None:
    """FastAPI dependency form of :func:`validate_csrf`."""
    validate_csrf(request)


def check_honeypot(value: str | None) -> None:
    """Reject submissions where the hidden honeypot field was filled in."""
    if value:
        raise RequestGuardError("Form not submitted properly.", "invalid_request", 400)
