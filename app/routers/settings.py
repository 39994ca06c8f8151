"""Profile settings routes: password, email, two-factor, and connections."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cookies import RequestCookies
from app.core.csrf import require_csrf
from app.core.outcomes import Redirect
from app.dependencies import (
    error_response,
    get_database_session,
    get_request_cookies,
    get_request_path,
    render_redirect,
)
from app.schemas.settings import (
    ChangeEmailRequest,
    ConnectionListResponse,
    ConnectionResponse,
    CreatePasswordRequest,
    ProfileResponse,
    TwoFactorEnrollmentResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from app.services.auth_service import AuthService, AuthServiceError, get_auth_service
from app.services.connection_service import ConnectionService, get_connection_service
from app.services.email_service import EmailDeliveryError
from app.services.user_service import UserService, get_user_service

router = APIRouter(prefix="/settings/profile", tags=["settings"])

DatabaseSession = Annotated[AsyncSession, Depends(get_database_session)]
Cookies = Annotated[RequestCookies, Depends(get_request_cookies)]
Auth = Annotated[AuthService, Depends(get_auth_service)]
Users = Annotated[UserService, Depends(get_user_service)]
Connections = Annotated[ConnectionService, Depends(get_connection_service)]


async def _require_user_id(
    request: Request,
    db_session: AsyncSession,
    cookies: RequestCookies,
    auth_service: AuthService,
) -> UUID | Redirect:
    """Resolve the logged-in user; GET requests come back here after login."""
    redirect_to = get_request_path(request) if request.method == "GET" else None
    return await auth_service.require_user_id(db_session, cookies, redirect_to=redirect_to)


@router.get("", response_model=None)
async def profile(
    request: Request,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
    user_service: Users,
) -> Response:
    """Return the current user's profile."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    user = await user_service.get_user_by_id(db_session, user_id)
    if user is None:
        return render_redirect(await auth_service.logout(db_session, cookies))
    body = ProfileResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        name=user.name,
        has_password=await user_service.has_password(db_session, user.id),
        is_two_factor_enabled=await auth_service.get_two_factor_status(db_session, user.id),
    )
    return JSONResponse(content=body.model_dump(mode="json"))


@router.post("/password/create", response_model=None, dependencies=[Depends(require_csrf)])
async def create_password(
    request: Request,
    payload: CreatePasswordRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Set the first password of an account that only logs in through providers."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    outcome = await auth_service.create_password(
        db_session, user_id=user_id, password=payload.new_password
    )
    return render_redirect(outcome)


@router.post("/change-email", response_model=None, dependencies=[Depends(require_csrf)])
async def change_email(
    request: Request,
    payload: ChangeEmailRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Email a confirmation code to the requested new address."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    try:
        outcome = await auth_service.start_email_change(
            db_session,
            cookies,
            user_id=user_id,
            new_email=payload.email,
            redirect_to="/settings/profile",
        )
    except (AuthServiceError, EmailDeliveryError) as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.get("/two-factor", response_model=None)
async def two_factor_status(
    request: Request,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    enabled = await auth_service.get_two_factor_status(db_session, user_id)
    return JSONResponse(content=TwoFactorStatusResponse(is_two_factor_enabled=enabled).model_dump())


@router.post("/two-factor", response_model=None, dependencies=[Depends(require_csrf)])
async def start_two_factor(
    request: Request,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Create a pending authenticator secret and continue to its confirmation."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    return render_redirect(await auth_service.start_two_factor_enrollment(db_session, user_id))


@router.get("/two-factor/verify", response_model=None)
async def two_factor_enrollment(
    request: Request,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Return the otpauth URI of the pending enrollment."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    otp_uri = await auth_service.get_two_factor_enrollment_uri(db_session, user_id)
    if otp_uri is None:
        return render_redirect(Redirect("/settings/profile/two-factor"))
    return JSONResponse(content=TwoFactorEnrollmentResponse(otp_uri=otp_uri).model_dump())


@router.post("/two-factor/verify", response_model=None, dependencies=[Depends(require_csrf)])
async def confirm_two_factor(
    request: Request,
    payload: TwoFactorVerifyRequest,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    try:
        outcome = await auth_service.complete_two_factor_enrollment(
            db_session, cookies, user_id=user_id, code=payload.code
        )
    except AuthServiceError as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)


@router.post("/two-factor/disable", response_model=None, dependencies=[Depends(require_csrf)])
async def disable_two_factor(
    request: Request,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Disable 2FA; a stale second-factor check redirects to the challenge first."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    outcome = await auth_service.disable_two_factor(
        db_session, cookies, user_id=user_id, redirect_to="/settings/profile/two-factor"
    )
    return render_redirect(outcome)


@router.get("/connections", response_model=None)
async def list_connections(
    request: Request,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
    user_service: Users,
    connection_service: Connections,
) -> Response:
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    connections = await connection_service.list_connections(db_session, user_id)
    has_password = await user_service.has_password(db_session, user_id)
    body = ConnectionListResponse(
        connections=[ConnectionResponse.model_validate(item) for item in connections],
        can_delete_connections=has_password or len(connections) > 1,
    )
    return JSONResponse(content=body.model_dump(mode="json"))


@router.post(
    "/connections/{connection_id}/delete",
    response_model=None,
    dependencies=[Depends(require_csrf)],
)
async def delete_connection(
    request: Request,
    connection_id: UUID,
    db_session: DatabaseSession,
    cookies: Cookies,
    auth_service: Auth,
) -> Response:
    """Delete a connection unless it is the account's only way to log in."""
    user_id = await _require_user_id(request, db_session, cookies, auth_service)
    if isinstance(user_id, Redirect):
        return render_redirect(user_id)
    try:
        outcome = await auth_service.delete_connection(
            db_session, user_id=user_id, connection_id=connection_id
        )
    except AuthServiceError as exc:
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return render_redirect(outcome)
