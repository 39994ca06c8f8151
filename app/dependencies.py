"""Shared FastAPI dependency helpers."""

from collections.abc import AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cookies import CookieManager, RequestCookies, get_cookie_manager
from app.core.outcomes import Redirect
from app.db.session import get_db_session


async def get_database_session() -> AsyncGenerator[AsyncSession, None]:
    """Expose the request-scoped async database session dependency."""
    async for session in get_db_session():
        yield session


def get_request_cookies(request: Request) -> RequestCookies:
    """Decode the auth cookies presented with the request."""
    return get_cookie_manager().read(request.cookies)


def get_client_ip(request: Request) -> str:
    """Return the caller address, preferring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def get_request_path(request: Request) -> str:
    """Return the request path plus query string, used as a post-login target."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def error_response(status_code: int, detail: str, code: str) -> JSONResponse:
    """Build standardized API error response payload."""
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


def render_redirect(
    outcome: Redirect,
    cookie_manager: CookieManager | None = None,
) -> RedirectResponse:
    """Render a redirect outcome, applying its cookie mutations."""
    response = RedirectResponse(url=outcome.location, status_code=outcome.status_code)
    if not outcome.cookies:
        return response
    manager = cookie_manager or get_cookie_manager()
    for mutation in outcome.cookies:
        if mutation.value is None:
            response.delete_cookie(
                key=mutation.name,
                path="/",
                secure=manager.secure,
                httponly=True,
                samesite="lax",
            )
            continue
        response.set_cookie(
            key=mutation.name,
            value=mutation.value,
            max_age=mutation.max_age,
            expires=mutation.expires,
            path="/",
            secure=manager.secure,
            httponly=True,
            samesite="lax",
        )
    return response
