"""External provider login, callback, and provider onboarding routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cookies import RequestCookies
from app.core.csrf import require_csrf
from app.core.oauth import OAuthProtocolError
from app.core.outcomes import Redirect
from app.dependencies import (
    error_response,
    get_database_session,
    get_request_cookies,
    render_redirect,
)
from app.schemas.auth import (
    ProviderLoginRequest,
    ProviderOnboardingRequest,
    ProviderOnboardingResponse,
)
from app.services.auth_service import AuthService, AuthServiceError, get_auth_service
from app.services.connection_service import ConnectionServiceError
from app.services.user_service import UserServiceError

router = APIRouter(tags=["oauth"])

DatabaseSession = Annotated[AsyncSession, Depends(get_database_session)]
Cookies = Annotated[RequestCookies, Depends(get_request_cookies)]
Auth = Annotated[AuthService, Depends(get_auth_service)]


@router.get("/auth/{provider}")
async def provider_login_page(provider: str) -> RedirectResponse:
    return RedirectResponse(url="/login", status_code=303)


@router.post("/auth/{provider}", response_model=None, dependencies=[Depends(require_csrf)])
async def provider_login(
    provider: str,
    auth_service: Auth,
    payload: ProviderLoginRequest | None = None,
) -> Response:
    """Redirect the browser to the provider's authorization page."""
    try:
        outcome = await auth_service.start_provider_login(
            provider, redirect_to=payload.redirect_to if payload else None
        )
    except (AuthServiceError, OAuthProtocolError) as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/auth/{provider}/callback", response_model=None)
async def provider_callback(
    provider: str,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
    state: Annotated[str | None, Query()] = None,
    code: Annotated[str | None, Query()] = None,
) -> Response:
    """Handle the provider redirect: link, log in, or start provider onboarding."""
    try:
        outcome = await auth_service.complete_provider_callback(
            db_session, cookies, provider_name=provider, state=state, code=code
        )
    except AuthServiceError as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/onboarding/{provider}", response_model=None)
async def provider_onboarding_page(
    provider: str,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    flow = auth_service.get_provider_onboarding(cookies, provider)
    if flow is None:
        return render_redirect(Redirect("/login"))
    body = ProviderOnboardingResponse(
        email=flow.email,
        provider_name=flow.provider_name,
        username=flow.profile.username,
        name=flow.profile.name,
        image_url=flow.profile.image_url,
    )
    return JSONResponse(content=body.model_dump())


@router.post(
    "/onboarding/{provider}", response_model=None, dependencies=[Depends(require_csrf)]
)
async def provider_onboarding(
    provider: str,
    payload: ProviderOnboardingRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Create an account from the pending provider profile."""
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    try:
        outcome = await auth_service.complete_provider_onboarding(
            db_session,
            cookies,
            provider_name=provider,
            username=payload.username,
            name=payload.name,
            remember=payload.remember,
            redirect_to=payload.redirect_to,
        )
    except (AuthServiceError, UserServiceError, ConnectionServiceError) as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)
