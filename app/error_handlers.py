"""Global exception handlers enforcing API error response contracts."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.csrf import RequestGuardError
from app.dependencies import get_client_ip

VALID_ERROR_CODES = {
    "invalid_request",
    "invalid_csrf_token",
    "invalid_credentials",
    "invalid_code",
    "user_exists",
    "username_taken",
    "rate_limited",
    "email_delivery_failed",
    "invalid_provider",
    "connection_exists",
    "last_login_method",
    "invalid_connection",
    "invalid_user",
    "not_found",
    "service_unavailable",
    "internal_error",
}

_DEFAULT_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "invalid_request",
    403: "invalid_csrf_token",
    404: "not_found",
    405: "invalid_request",
    409: "user_exists",
    422: "invalid_request",
    429: "rate_limited",
    502: "email_delivery_failed",
    503: "service_unavailable",
}

_AUTH_PATHS = frozenset(
    {"/login", "/signup", "/verify", "/forgot-password", "/reset-password", "/onboarding"}
)

logger = structlog.get_logger(__name__)


def _error_response(status_code: int, detail: str, code: str) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


def _resolve_error_code(status_code: int, raw_code: str | None) -> str:
    """Resolve a valid machine-readable error code."""
    if raw_code in VALID_ERROR_CODES:
        return raw_code
    if status_code >= 500:
        return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "internal_error")
    return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "invalid_request")


def _extract_detail_and_code(detail: Any) -> tuple[str, str | None]:
    """Normalize exception detail payload into message and optional code."""
    if isinstance(detail, dict):
        raw_detail = detail.get("detail", "Request failed.")
        raw_code = detail.get("code")
        return str(raw_detail), str(raw_code) if raw_code is not None else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _sanitize_detail(detail: str, status_code: int, environment: str) -> str:
    """Hide internal failure details outside development."""
    if environment != "development" and status_code >= 500:
        return "Internal server error."
    return detail


def _is_auth_request_path(path: str) -> bool:
    """Return True for credential and identity-linking request paths."""
    return (
        path in _AUTH_PATHS
        or path.startswith("/auth/")
        or path.startswith("/onboarding/")
        or path.startswith("/settings/profile")
    )


def _log_auth_failure(
    request: Request,
    status_code: int,
    detail: str,
    code: str,
) -> None:
    """Emit WARNING-level log for rejected auth submissions."""
    if status_code < 400 or status_code >= 500:
        return
    if not _is_auth_request_path(request.url.path):
        return

    correlation_id = getattr(
        request.state,
        "correlation_id",
        request.headers.get("x-correlation-id", "unknown"),
    )
    logger.warning(
        "auth_failure",
        correlation_id=correlation_id,
        event_type="auth_failure",
        ip_address=get_client_ip(request),
        success=False,
        status_code=status_code,
        code=code,
        detail=detail,
        path=request.url.path,
        method=request.method,
    )


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Register global exception handlers enforcing error shape contract."""

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        raw_detail, raw_code = _extract_detail_and_code(exc.detail)
        code = _resolve_error_code(exc.status_code, raw_code)
        _log_auth_failure(
            request=request, status_code=exc.status_code, detail=raw_detail, code=code
        )
        return _error_response(status_code=exc.status_code, detail=raw_detail, code=code)

    @app.exception_handler(RequestGuardError)
    async def handle_request_guard_error(request: Request, exc: RequestGuardError) -> JSONResponse:
        """Render CSRF and honeypot rejections."""
        code = _resolve_error_code(exc.status_code, exc.code)
        _log_auth_failure(
            request=request, status_code=exc.status_code, detail=exc.detail, code=code
        )
        return _error_response(status_code=exc.status_code, detail=exc.detail, code=code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to standardized payload."""
        detail = "Invalid request payload."
        if environment == "development":
            errors = exc.errors()
            if errors:
                detail = f"Invalid request payload: {errors[0].get('msg', 'validation error')}."
        code = "invalid_request"
        _log_auth_failure(request=request, status_code=422, detail=detail, code=code)
        return _error_response(status_code=422, detail=detail, code=code)

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        correlation_id = getattr(
            request.state,
            "correlation_id",
            request.headers.get("x-correlation-id", "unknown"),
        )
        logger.error(
            "unhandled_exception",
            correlation_id=correlation_id,
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        detail = _sanitize_detail(str(exc), 500, environment)
        return _error_response(status_code=500, detail=detail, code="internal_error")
