"""Security headers middleware."""

from __future__ import annotations

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

_BASE_HEADERS: dict[str, str] = {
    "Content-Security-Policy": (
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self' "
        "https://github.com"
    ),
    "Referrer-Policy": "same-origin",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
}
_HSTS_HEADER = ("Strict-Transport-Security", "max-age=63072000; includeSubDomains")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add browser hardening headers; HSTS only when served over HTTPS."""

    def __init__(self, app, enable_hsts: bool = True) -> None:
        super().__init__(app)
        self._headers = dict(_BASE_HEADERS)
        if enable_hsts:
            self._headers[_HSTS_HEADER[0]] = _HSTS_HEADER[1]

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for header_name, header_value in self._headers.items():
            response.headers.setdefault(header_name, header_value)
        return response
