"""Structured request logging middleware with credential redaction."""

from __future__ import annotations

from time import perf_counter
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.dependencies import get_client_ip

SENSITIVE_KEYS = {
    "authorization",
    "code",
    "cookie",
    "otp",
    "password",
    "secret",
    "set_cookie",
    "state",
    "token",
    "x_csrf_token",
}
REDACTED = "***REDACTED***"

logger = structlog.get_logger(__name__)


def _is_sensitive_key(key: str) -> bool:
    """Return True when key likely carries credential material."""
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return "token" in normalized or "password" in normalized or "secret" in normalized


def _redact_mapping(values: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive values from a dictionary."""
    redacted: dict[str, Any] = {}
    for key, value in values.items():
        if _is_sensitive_key(key):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = _redact_mapping(value)
        elif isinstance(value, list):
            redacted[key] = [
                _redact_mapping(item) if isinstance(item, dict) else item for item in value
            ]
        else:
            redacted[key] = value
    return redacted


def _redirect_path(response: Response) -> str | None:
    """Return the redirect target without its query string, which may hold codes."""
    location = response.headers.get("location")
    if not location:
        return None
    return location.split("?", 1)[0]


class LoggingMiddleware(BaseHTTPMiddleware):
    """Emit one structured log per request with redacted metadata."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = perf_counter()
        request_fields: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "query_params": _redact_mapping(dict(request.query_params.items())),
            "client_ip": get_client_ip(request),
            "user_agent": request.headers.get("user-agent", ""),
        }

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_completed",
                status_code=500,
                duration_ms=round((perf_counter() - start) * 1000, 2),
                **request_fields,
            )
            raise

        event_logger = logger.warning if response.status_code >= 400 else logger.info
        event_logger(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((perf_counter() - start) * 1000, 2),
            redirect_to=_redirect_path(response),
            **request_fields,
        )
        return response
