"""Login, signup, verification, and password reset routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cookies import CookieManager, RequestCookies, get_cookie_manager
from app.core.csrf import CSRF_COOKIE_NAME, check_honeypot, generate_csrf_token, require_csrf
from app.core.outcomes import Redirect
from app.dependencies import (
    error_response,
    get_database_session,
    get_request_cookies,
    render_redirect,
)
from app.schemas.auth import (
    CSRFTokenResponse,
    ForgotPasswordRequest,
    LoginRequest,
    OnboardingRequest,
    OnboardingResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    SignupRequest,
    VerifyPageResponse,
    VerifyRequest,
)
from app.services.auth_service import AuthService, AuthServiceError, get_auth_service
from app.services.email_service import EmailDeliveryError
from app.services.user_service import UserServiceError

router = APIRouter(tags=["auth"])

DatabaseSession = Annotated[AsyncSession, Depends(get_database_session)]
Cookies = Annotated[RequestCookies, Depends(get_request_cookies)]
Auth = Annotated[AuthService, Depends(get_auth_service)]
CookieCodec = Annotated[CookieManager, Depends(get_cookie_manager)]


@router.get("/csrf", response_model=CSRFTokenResponse)
async def issue_csrf_token(cookie_manager: CookieCodec) -> JSONResponse:
    """Issue a double-submit CSRF token as both a cookie and a response value."""
    token = generate_csrf_token()
    response = JSONResponse(content={"csrf_token": token})
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=token,
        path="/",
        secure=cookie_manager.secure,
        httponly=False,
        samesite="lax",
    )
    return response


@router.get("/login", response_model=None)
async def login_page(
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    return JSONResponse(content={})


@router.post("/login", response_model=None, dependencies=[Depends(require_csrf)])
async def login(
    payload: LoginRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Authenticate username/password and start (or park) a session."""
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    check_honeypot(payload.honeypot)
    try:
        outcome = await auth_service.login_with_password(
            db_session,
            cookies,
            username=payload.username,
            password=payload.password,
            remember=payload.remember,
            redirect_to=payload.redirect_to,
        )
    except AuthServiceError as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/logout")
async def logout_page() -> RedirectResponse:
    return RedirectResponse(url="/", status_code=303)


@router.post("/logout", dependencies=[Depends(require_csrf)])
async def logout(
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> RedirectResponse:
    """Log out; succeeds even when the session is already gone."""
    return render_redirect(await auth_service.logout(db_session, cookies))


@router.post("/signup", response_model=None, dependencies=[Depends(require_csrf)])
async def signup(
    payload: SignupRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Start onboarding by emailing a code to the submitted address."""
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    check_honeypot(payload.honeypot)
    try:
        outcome = await auth_service.start_signup(
            db_session, email=payload.email, redirect_to=payload.redirect_to
        )
    except (AuthServiceError, EmailDeliveryError) as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/verify", response_model=None)
async def verify_page(
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
    code: Annotated[str | None, Query()] = None,
    type: Annotated[str | None, Query()] = None,  # noqa: A002
    target: Annotated[str | None, Query()] = None,
    redirect_to: Annotated[str | None, Query(alias="redirectTo")] = None,
) -> Response:
    """Return verify form defaults, or validate immediately when a code link was followed."""
    if code is None or type is None or target is None:
        return JSONResponse(
            content=VerifyPageResponse(
                type=type, target=target, redirect_to=redirect_to
            ).model_dump()
        )
    try:
        submission = VerifyRequest(code=code, type=type, target=target, redirectTo=redirect_to)
    except ValueError:
        return error_response(status_code=400, detail="Invalid code", code="invalid_code")
    return await _verify(submission, db_session, cookies, auth_service)


@router.post("/verify", response_model=None, dependencies=[Depends(require_csrf)])
async def verify(
    payload: VerifyRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    return await _verify(payload, db_session, cookies, auth_service)


async def _verify(
    payload: VerifyRequest,
    db_session: AsyncSession,
    cookies: RequestCookies,
    auth_service: AuthService,
) -> Response:
    try:
        outcome = await auth_service.verify(
            db_session,
            cookies,
            target=payload.target,
            type=payload.type,
            code=payload.code,
            redirect_to=payload.redirect_to,
        )
    except (AuthServiceError, UserServiceError) as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/onboarding", response_model=None)
async def onboarding_page(
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    email = auth_service.get_onboarding_email(cookies)
    if email is None:
        return render_redirect(Redirect("/signup"))
    return JSONResponse(content=OnboardingResponse(email=email).model_dump())


@router.post("/onboarding", response_model=None, dependencies=[Depends(require_csrf)])
async def onboarding(
    payload: OnboardingRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Create the account for the verified onboarding email."""
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    check_honeypot(payload.honeypot)
    try:
        outcome = await auth_service.complete_onboarding(
            db_session,
            cookies,
            username=payload.username,
            name=payload.name,
            password=payload.password,
            remember=payload.remember,
            redirect_to=payload.redirect_to,
        )
    except (AuthServiceError, UserServiceError) as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.post("/forgot-password", response_model=None, dependencies=[Depends(require_csrf)])
async def forgot_password(
    payload: ForgotPasswordRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    redirect = await auth_service.require_anonymous(db_session, cookies)
    if redirect is not None:
        return render_redirect(redirect)
    check_honeypot(payload.honeypot)
    try:
        outcome = await auth_service.start_password_reset(
            db_session, username_or_email=payload.username_or_email
        )
    except EmailDeliveryError as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/reset-password", response_model=None)
async def reset_password_page(cookies: Cookies, auth_service: Auth) -> Response:
    username = auth_service.get_reset_username(cookies)
    if username is None:
        return render_redirect(Redirect("/login"))
    return JSONResponse(content=ResetPasswordResponse(username=username).model_dump())


@router.post("/reset-password", response_model=None, dependencies=[Depends(require_csrf)])
async def reset_password(
    payload: ResetPasswordRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Set a new password for the verified account and revoke its sessions."""
    outcome = await auth_service.reset_password(db_session, cookies, password=payload.password)
    return render_redirect(outcome)
