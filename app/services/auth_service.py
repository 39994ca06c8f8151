"""Request-facing authentication flows composed from the auth building blocks."""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Protocol
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.cookies import (
    AwaitingEmailChange,
    AwaitingOnboarding,
    AwaitingPasswordReset,
    AwaitingProviderCallback,
    AwaitingProviderOnboarding,
    AwaitingTwoFA,
    CookieManager,
    CookieMutation,
    PrefilledProfile,
    RequestCookies,
    SessionCookie,
    Toast,
    get_cookie_manager,
)
from app.core.oauth import (
    GITHUB_PROVIDER_NAME,
    PROVIDER_LABELS,
    OAuthProtocolError,
    ProviderProfile,
    get_github_oauth_client,
)
from app.core.outcomes import Redirect, safe_redirect, with_query
from app.core.sessions import SessionService, get_session_service
from app.models.user import User
from app.services.connection_service import (
    ConnectionService,
    ConnectionServiceError,
    LinkDecision,
    get_connection_service,
)
from app.services.email_service import EmailDeliveryError, EmailSender, get_email_sender
from app.services.user_service import UserService, generate_username, get_user_service
from app.services.verification_service import (
    CHANGE_EMAIL,
    ONBOARDING,
    RESET_PASSWORD,
    TWO_FACTOR,
    VerificationService,
    VerificationType,
    get_verification_service,
)

CONNECTIONS_PATH = "/settings/profile/connections"
PROFILE_PATH = "/settings/profile"
TWO_FACTOR_PATH = "/settings/profile/two-factor"

logger = structlog.get_logger(__name__)


class AuthServiceError(Exception):
    """Raised when an auth flow rejects a submission."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


class ProviderClient(Protocol):
    """OAuth client operations used by the provider login flow."""

    def generate_state(self) -> str: ...

    async def create_authorization_url(self, state: str) -> str: ...

    async def exchange_code_for_profile(self, code: str) -> ProviderProfile: ...


class AuthService:
    """Compose sessions, verifications, and identity linking into auth flows.

    Every flow returns a :class:`Redirect` carrying the cookie mutations it
    needs; expected user-facing failures raise :class:`AuthServiceError`.
    """

    def __init__(
        self,
        session_service: SessionService,
        verification_service: VerificationService,
        user_service: UserService,
        connection_service: ConnectionService,
        cookie_manager: CookieManager,
        email_sender: EmailSender,
        provider_clients: Mapping[str, ProviderClient],
        two_factor_freshness_seconds: int,
    ) -> None:
        self._sessions = session_service
        self._verifications = verification_service
        self._users = user_service
        self._connections = connection_service
        self._cookies = cookie_manager
        self._email_sender = email_sender
        self._provider_clients = provider_clients
        self._two_factor_freshness = timedelta(seconds=two_factor_freshness_seconds)

    # Session resolution

    async def get_user_id(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
    ) -> UUID | Redirect | None:
        """Return the current user id, None when anonymous, or a forced-logout redirect."""
        if cookies.session is None:
            return None
        user_id = await self._sessions.resolve_session(db_session, cookies.session.session_id)
        if user_id is not None:
            return user_id
        logger.info("session_invalid", session_id=str(cookies.session.session_id))
        await self._destroy_session_quietly(db_session, cookies.session.session_id)
        return Redirect("/", cookies=(self._cookies.destroy_session(),))

    async def require_user_id(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        redirect_to: str | None,
    ) -> UUID | Redirect:
        """Return the current user id or a login redirect preserving ``redirect_to``."""
        user_id = await self.get_user_id(db_session, cookies)
        if user_id is None:
            return Redirect(with_query("/login", redirectTo=redirect_to))
        return user_id

    async def require_anonymous(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
    ) -> Redirect | None:
        """Return a redirect home when a user is already logged in."""
        user_id = await self.get_user_id(db_session, cookies)
        if isinstance(user_id, UUID):
            return Redirect("/")
        return user_id

    async def should_request_two_fa(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        user_id: UUID,
    ) -> bool:
        """Return True when a second factor must be (re)checked for this user."""
        if isinstance(cookies.flow, AwaitingTwoFA):
            return True
        if not await self._verifications.has_two_factor(db_session, user_id):
            return False
        return not self._is_verification_fresh(cookies.session)

    async def require_recent_verification(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        user_id: UUID,
        redirect_to: str | None,
    ) -> Redirect | None:
        """Return a 2FA challenge redirect when the last check is missing or stale."""
        if not await self.should_request_two_fa(db_session, cookies, user_id):
            return None
        return Redirect(
            with_query("/verify", type=TWO_FACTOR, target=str(user_id), redirectTo=redirect_to),
            cookies=(
                self._cookies.commit_toast(
                    Toast(
                        type="message",
                        title="Please Reverify",
                        description="Please reverify your account before proceeding",
                    )
                ),
            ),
        )

    # Password login and logout

    async def login(self, db_session: AsyncSession, username: str, password: str) -> User | None:
        """Return the user for valid credentials, otherwise None."""
        user = await self._users.authenticate(db_session, username=username, password=password)
        if user is None:
            logger.warning("login_failed", username=username.strip().lower())
        return user

    async def login_with_password(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        username: str,
        password: str,
        remember: bool,
        redirect_to: str | None,
    ) -> Redirect:
        user = await self.login(db_session, username=username, password=password)
        if user is None:
            raise AuthServiceError("Invalid username or password", "invalid_credentials", 400)
        return await self.handle_new_session(
            db_session,
            cookies,
            user_id=user.id,
            remember=remember,
            redirect_to=redirect_to,
        )

    async def handle_new_session(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        user_id: UUID,
        remember: bool,
        redirect_to: str | None,
        toast: Toast | None = None,
    ) -> Redirect:
        """Start a session, or park it behind a 2FA challenge when one is due."""
        if await self._verifications.has_two_factor(db_session, user_id):
            parked = AwaitingTwoFA(
                session_id=uuid4(),
                user_id=user_id,
                remember=remember,
                redirect_to=redirect_to,
            )
            logger.info("two_factor_challenge_required", user_id=str(user_id))
            return Redirect(
                with_query(
                    "/verify", type=TWO_FACTOR, target=str(user_id), redirectTo=redirect_to
                ),
                cookies=(self._cookies.commit_flow(parked),),
            )

        session_row = await self._sessions.create_session(db_session, user_id)
        mutations = [
            self._commit_session(
                SessionCookie(session_id=session_row.id, remember=remember),
                session_row.expires_at,
            ),
            self._cookies.destroy_flow(),
        ]
        if toast is not None:
            mutations.append(self._cookies.commit_toast(toast))
        return Redirect(safe_redirect(redirect_to), cookies=tuple(mutations))

    async def logout(self, db_session: AsyncSession, cookies: RequestCookies) -> Redirect:
        """Destroy the session if it still exists; always clears the cookie."""
        if cookies.session is not None:
            await self._destroy_session_quietly(db_session, cookies.session.session_id)
        return Redirect(
            "/",
            cookies=(self._cookies.destroy_session(), self._cookies.destroy_flow()),
        )

    # Signup and onboarding

    async def start_signup(
        self,
        db_session: AsyncSession,
        email: str,
        redirect_to: str | None = None,
    ) -> Redirect:
        """Email an onboarding code to an unused address."""
        normalized_email = email.strip().lower()
        if await self._users.get_user_by_email(db_session, normalized_email) is not None:
            raise AuthServiceError("A user already exists with this email", "user_exists", 400)
        prepared = await self._verifications.prepare_verification(
            db_session, target=normalized_email, type=ONBOARDING, redirect_to=redirect_to
        )
        await self._send_code_email(
            db_session,
            target=normalized_email,
            type=ONBOARDING,
            to=normalized_email,
            subject="Welcome to Epic Notes!",
            text=(
                f"Here's your code: {prepared.otp}\n"
                f"Or click the link to get started: {prepared.verify_url}"
            ),
        )
        return Redirect(prepared.redirect_to)

    def get_onboarding_email(self, cookies: RequestCookies) -> str | None:
        if isinstance(cookies.flow, AwaitingOnboarding):
            return cookies.flow.email
        return None

    async def complete_onboarding(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        username: str,
        name: str | None,
        password: str,
        remember: bool,
        redirect_to: str | None,
    ) -> Redirect:
        """Create the account for a verified onboarding email and log it in."""
        flow = cookies.flow
        if not isinstance(flow, AwaitingOnboarding):
            return Redirect("/signup", cookies=(self._cookies.destroy_flow(),))
        await self._ensure_username_available(db_session, username)
        user = await self._users.create_user(
            db_session, email=flow.email, username=username, name=name, password=password
        )
        return await self._start_fresh_session(
            db_session,
            user_id=user.id,
            remember=remember,
            redirect_to=redirect_to,
            toast=Toast(
                type="success",
                title="Welcome",
                description="Thanks for signing up!",
            ),
        )

    def get_provider_onboarding(
        self,
        cookies: RequestCookies,
        provider_name: str,
    ) -> AwaitingProviderOnboarding | None:
        flow = cookies.flow
        if isinstance(flow, AwaitingProviderOnboarding) and flow.provider_name == provider_name:
            return flow
        return None

    async def complete_provider_onboarding(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        provider_name: str,
        username: str,
        name: str | None,
        remember: bool,
        redirect_to: str | None,
    ) -> Redirect:
        """Create an account from a provider profile, link it, and log it in."""
        flow = self.get_provider_onboarding(cookies, provider_name)
        if flow is None:
            return Redirect("/login", cookies=(self._cookies.destroy_flow(),))
        await self._ensure_username_available(db_session, username)
        owner_id = await self._connections.get_connection_owner(
            db_session, provider_name=provider_name, provider_id=flow.provider_id
        )
        if owner_id is not None:
            raise AuthServiceError(
                "This account is already connected.", "connection_exists", 409
            )
        user = await self._users.create_user(
            db_session, email=flow.email, username=username, name=name
        )
        await self._connections.create_connection(
            db_session,
            provider_name=provider_name,
            provider_id=flow.provider_id,
            user_id=user.id,
        )
        return await self._start_fresh_session(
            db_session,
            user_id=user.id,
            remember=remember,
            redirect_to=redirect_to or flow.redirect_to,
            toast=Toast(
                type="success",
                title="Welcome",
                description="Thanks for signing up!",
            ),
        )

    # Password reset

    async def start_password_reset(
        self,
        db_session: AsyncSession,
        username_or_email: str,
    ) -> Redirect:
        """Email a reset code; unknown accounts get the same redirect without an email."""
        target = username_or_email.strip().lower()
        user = await self._users.get_user_by_username_or_email(db_session, target)
        if user is None:
            logger.warning("password_reset_unknown_user")
            return Redirect(with_query("/verify", type=RESET_PASSWORD, target=target))
        prepared = await self._verifications.prepare_verification(
            db_session, target=target, type=RESET_PASSWORD
        )
        await self._send_code_email(
            db_session,
            target=target,
            type=RESET_PASSWORD,
            to=user.email,
            subject="Epic Notes Password Reset",
            text=(
                f"Here's your code: {prepared.otp}\n"
                f"Or click the link to reset your password: {prepared.verify_url}"
            ),
        )
        return Redirect(prepared.redirect_to)

    def get_reset_username(self, cookies: RequestCookies) -> str | None:
        if isinstance(cookies.flow, AwaitingPasswordReset):
            return cookies.flow.username
        return None

    async def reset_password(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        password: str,
    ) -> Redirect:
        """Replace the password of the verified user and revoke all their sessions."""
        flow = cookies.flow
        if not isinstance(flow, AwaitingPasswordReset):
            return Redirect("/login", cookies=(self._cookies.destroy_flow(),))
        user = await self._users.get_user_by_username(db_session, flow.username)
        if user is None:
            return Redirect("/login", cookies=(self._cookies.destroy_flow(),))
        await self._users.set_password(db_session, user_id=user.id, password=password)
        await self._sessions.destroy_user_sessions(db_session, user_id=user.id)
        logger.info("password_reset", user_id=str(user.id))
        return Redirect(
            "/login",
            cookies=(
                self._cookies.destroy_flow(),
                self._cookies.commit_toast(
                    Toast(
                        type="success",
                        title="Password reset",
                        description="Your password has been reset. Please log in.",
                    )
                ),
            ),
        )

    # Code verification

    async def verify(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        target: str,
        type: VerificationType,  # noqa: A002
        code: str,
        redirect_to: str | None,
    ) -> Redirect:
        """Check a submitted code and continue the flow it belongs to."""
        if type == TWO_FACTOR:
            return await self._verify_two_factor(
                db_session, cookies, target=target, code=code, redirect_to=redirect_to
            )
        if type == CHANGE_EMAIL:
            flow = cookies.flow
            if not isinstance(flow, AwaitingEmailChange) or str(flow.user_id) != target:
                logger.warning("verification_failed", type=type, reason="missing_flow")
                raise AuthServiceError("Invalid code", "invalid_code", 400)

        if not await self._verifications.consume_code(
            db_session, target=target, type=type, code=code
        ):
            logger.warning("verification_failed", type=type)
            raise AuthServiceError("Invalid code", "invalid_code", 400)

        if type == ONBOARDING:
            return Redirect(
                with_query("/onboarding", redirectTo=redirect_to),
                cookies=(self._cookies.commit_flow(AwaitingOnboarding(email=target)),),
            )
        if type == RESET_PASSWORD:
            user = await self._users.get_user_by_username_or_email(db_session, target)
            if user is None:
                raise AuthServiceError("Invalid code", "invalid_code", 400)
            return Redirect(
                "/reset-password",
                cookies=(
                    self._cookies.commit_flow(AwaitingPasswordReset(username=user.username)),
                ),
            )
        if type == CHANGE_EMAIL:
            return await self._complete_email_change(db_session, cookies)
        raise AuthServiceError("Invalid code", "invalid_code", 400)

    async def _verify_two_factor(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        target: str,
        code: str,
        redirect_to: str | None,
    ) -> Redirect:
        if not await self._verifications.is_code_valid(
            db_session, target=target, type=TWO_FACTOR, code=code
        ):
            logger.warning("verification_failed", type=TWO_FACTOR)
            raise AuthServiceError("Invalid code", "invalid_code", 400)

        now = datetime.now(UTC)
        flow = cookies.flow
        if isinstance(flow, AwaitingTwoFA):
            if str(flow.user_id) != target:
                raise AuthServiceError("Invalid code", "invalid_code", 400)
            session_row = await self._sessions.create_session(
                db_session, flow.user_id, session_id=flow.session_id
            )
            return Redirect(
                safe_redirect(flow.redirect_to or redirect_to),
                cookies=(
                    self._commit_session(
                        SessionCookie(
                            session_id=session_row.id,
                            verified_at=now,
                            remember=flow.remember,
                        ),
                        session_row.expires_at,
                    ),
                    self._cookies.destroy_flow(),
                ),
            )

        user_id = await self.get_user_id(db_session, cookies)
        if isinstance(user_id, Redirect):
            return user_id
        if user_id is None or cookies.session is None:
            return Redirect(with_query("/login", redirectTo=redirect_to))
        if str(user_id) != target:
            raise AuthServiceError("Invalid code", "invalid_code", 400)
        expires_at = await self._sessions.get_session_expiration(
            db_session, cookies.session.session_id
        )
        return Redirect(
            safe_redirect(redirect_to),
            cookies=(
                self._commit_session(
                    cookies.session.model_copy(update={"verified_at": now}), expires_at
                ),
            ),
        )

    # Profile settings

    async def create_password(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        password: str,
    ) -> Redirect:
        """Give an OAuth-only account its first password."""
        if await self._users.has_password(db_session, user_id):
            return Redirect(PROFILE_PATH)
        await self._users.set_password(db_session, user_id=user_id, password=password)
        logger.info("password_created", user_id=str(user_id))
        return Redirect(PROFILE_PATH)

    async def start_email_change(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        user_id: UUID,
        new_email: str,
        redirect_to: str | None,
    ) -> Redirect:
        """Email a code to the new address after a fresh second-factor check."""
        reverify = await self.require_recent_verification(
            db_session, cookies, user_id=user_id, redirect_to=redirect_to
        )
        if reverify is not None:
            return reverify
        normalized_email = new_email.strip().lower()
        if await self._users.get_user_by_email(db_session, normalized_email) is not None:
            raise AuthServiceError("This email is already in use.", "user_exists", 400)
        prepared = await self._verifications.prepare_verification(
            db_session, target=str(user_id), type=CHANGE_EMAIL
        )
        await self._send_code_email(
            db_session,
            target=str(user_id),
            type=CHANGE_EMAIL,
            to=normalized_email,
            subject="Epic Notes Email Change Verification",
            text=(
                f"Here's your code: {prepared.otp}\n"
                f"Or click the link to confirm this address: {prepared.verify_url}"
            ),
        )
        return Redirect(
            prepared.redirect_to,
            cookies=(
                self._cookies.commit_flow(
                    AwaitingEmailChange(user_id=user_id, new_email=normalized_email)
                ),
            ),
        )

    async def _complete_email_change(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
    ) -> Redirect:
        flow = cookies.flow
        if not isinstance(flow, AwaitingEmailChange):
            raise AuthServiceError("Invalid code", "invalid_code", 400)
        user = await self._users.get_user_by_id(db_session, flow.user_id)
        if user is None:
            raise AuthServiceError("Invalid code", "invalid_code", 400)
        previous_email = user.email
        await self._users.update_email(db_session, user_id=flow.user_id, email=flow.new_email)
        try:
            await self._email_sender.send_email(
                to=previous_email,
                subject="Epic Notes email changed",
                text=(
                    "We're writing to let you know that your Epic Notes email has been "
                    f"changed to {flow.new_email}."
                ),
            )
        except EmailDeliveryError:
            logger.warning("email_change_notice_failed", user_id=str(flow.user_id))
        return Redirect(
            PROFILE_PATH,
            cookies=(
                self._cookies.destroy_flow(),
                self._cookies.commit_toast(
                    Toast(
                        type="success",
                        title="Email Changed",
                        description=f"Your email has been changed to {flow.new_email}",
                    )
                ),
            ),
        )

    async def get_two_factor_status(self, db_session: AsyncSession, user_id: UUID) -> bool:
        return await self._verifications.has_two_factor(db_session, user_id)

    async def start_two_factor_enrollment(
        self,
        db_session: AsyncSession,
        user_id: UUID,
    ) -> Redirect:
        await self._verifications.start_two_factor_enrollment(db_session, user_id)
        return Redirect(f"{TWO_FACTOR_PATH}/verify")

    async def get_two_factor_enrollment_uri(
        self,
        db_session: AsyncSession,
        user_id: UUID,
    ) -> str | None:
        user = await self._users.get_user_by_id(db_session, user_id)
        if user is None:
            return None
        return await self._verifications.get_two_factor_enrollment_uri(
            db_session, user_id=user_id, account_name=user.email
        )

    async def complete_two_factor_enrollment(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        user_id: UUID,
        code: str,
    ) -> Redirect:
        """Enable 2FA once the authenticator proves it holds the pending secret."""
        if not await self._verifications.complete_two_factor_enrollment(
            db_session, user_id=user_id, code=code
        ):
            logger.warning("verification_failed", type="2fa-verify")
            raise AuthServiceError("Invalid code", "invalid_code", 400)
        mutations = [
            self._cookies.commit_toast(
                Toast(
                    type="success",
                    title="Enabled",
                    description="Two-factor authentication has been enabled.",
                )
            )
        ]
        if cookies.session is not None:
            expires_at = await self._sessions.get_session_expiration(
                db_session, cookies.session.session_id
            )
            mutations.append(
                self._commit_session(
                    cookies.session.model_copy(update={"verified_at": datetime.now(UTC)}),
                    expires_at,
                )
            )
        return Redirect(TWO_FACTOR_PATH, cookies=tuple(mutations))

    async def disable_two_factor(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        user_id: UUID,
        redirect_to: str | None,
    ) -> Redirect:
        """Remove the persistent 2FA record after a fresh second-factor check."""
        reverify = await self.require_recent_verification(
            db_session, cookies, user_id=user_id, redirect_to=redirect_to
        )
        if reverify is not None:
            return reverify
        await self._verifications.disable_two_factor(db_session, user_id)
        return Redirect(
            TWO_FACTOR_PATH,
            cookies=(
                self._cookies.commit_toast(
                    Toast(
                        type="message",
                        title="2FA Disabled",
                        description="Two factor authentication has been disabled.",
                    )
                ),
            ),
        )

    async def delete_connection(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        connection_id: UUID,
    ) -> Redirect:
        try:
            await self._connections.delete_connection(
                db_session, user_id=user_id, connection_id=connection_id
            )
        except ConnectionServiceError as exc:
            raise AuthServiceError(exc.detail, exc.code, exc.status_code) from exc
        return Redirect(
            CONNECTIONS_PATH,
            cookies=(
                self._cookies.commit_toast(
                    Toast(
                        type="success",
                        title="Deleted",
                        description="Your connection has been deleted.",
                    )
                ),
            ),
        )

    # External providers

    async def start_provider_login(
        self,
        provider_name: str,
        redirect_to: str | None,
    ) -> Redirect:
        """Redirect to the provider and remember the state it must echo back."""
        client = self._get_provider_client(provider_name)
        state = client.generate_state()
        authorization_url = await client.create_authorization_url(state)
        flow = AwaitingProviderCallback(
            state=state,
            provider_name=provider_name,
            redirect_to=safe_redirect(redirect_to) if redirect_to else None,
        )
        return Redirect(authorization_url, cookies=(self._cookies.commit_flow(flow),))

    async def complete_provider_callback(
        self,
        db_session: AsyncSession,
        cookies: RequestCookies,
        provider_name: str,
        state: str | None,
        code: str | None,
    ) -> Redirect:
        """Exchange the callback code and link, log in, or onboard the identity."""
        client = self._get_provider_client(provider_name)
        label = PROVIDER_LABELS.get(provider_name, provider_name)
        flow = cookies.flow
        redirect_to = flow.redirect_to if isinstance(flow, AwaitingProviderCallback) else None
        failure = Redirect(
            with_query("/login", redirectTo=redirect_to),
            cookies=(
                self._cookies.destroy_flow(),
                self._cookies.commit_toast(
                    Toast(
                        type="error",
                        title="Auth Failed",
                        description=f"There was an error authenticating with {label}.",
                    )
                ),
            ),
        )
        if (
            not isinstance(flow, AwaitingProviderCallback)
            or flow.provider_name != provider_name
            or not state
            or not code
            or not hmac.compare_digest(flow.state.encode("utf-8"), state.encode("utf-8"))
        ):
            logger.warning("oauth_callback_failed", provider=provider_name, reason="state_mismatch")
            return failure
        try:
            profile = await client.exchange_code_for_profile(code)
        except OAuthProtocolError as exc:
            logger.warning(
                "oauth_callback_failed",
                provider=provider_name,
                reason=exc.code,
                detail=exc.detail,
            )
            return failure

        current_user_id = await self.get_user_id(db_session, cookies)
        if isinstance(current_user_id, Redirect):
            return current_user_id.with_cookies(self._cookies.destroy_flow())
        try:
            link = await self._connections.resolve_link(
                db_session,
                provider_name=provider_name,
                profile=profile,
                current_user_id=current_user_id,
            )
        except ConnectionServiceError:
            logger.warning("oauth_link_conflict", provider=provider_name)
            return self._connections_notice(
                Toast(
                    type="message",
                    title="Already Connected",
                    description=(
                        f'The "{profile.username}" {label} account is already connected '
                        "to another account."
                    ),
                )
            )

        decision = link.decision
        if decision is LinkDecision.ALREADY_CONNECTED:
            return self._connections_notice(
                Toast(
                    type="message",
                    title="Already Connected",
                    description=f'Your "{profile.username}" {label} account is already connected.',
                )
            )
        if decision is LinkDecision.CONNECTED_TO_ANOTHER:
            return self._connections_notice(
                Toast(
                    type="message",
                    title="Already Connected",
                    description=(
                        f'The "{profile.username}" {label} account is already connected '
                        "to another account."
                    ),
                )
            )
        if decision is LinkDecision.CONNECTED_CURRENT_USER:
            return self._connections_notice(
                Toast(
                    type="success",
                    title="Connected",
                    description=f'Your "{profile.username}" {label} account has been connected.',
                )
            )
        if decision is LinkDecision.LOGIN_EXISTING and link.user_id is not None:
            return await self.handle_new_session(
                db_session,
                cookies,
                user_id=link.user_id,
                remember=True,
                redirect_to=redirect_to,
            )
        if decision is LinkDecision.CONNECTED_BY_EMAIL and link.user_id is not None:
            return await self.handle_new_session(
                db_session,
                cookies,
                user_id=link.user_id,
                remember=True,
                redirect_to=redirect_to or CONNECTIONS_PATH,
                toast=Toast(
                    type="success",
                    title="Connected",
                    description=f'Your "{profile.username}" {label} account has been connected.',
                ),
            )

        onboarding = AwaitingProviderOnboarding(
            email=profile.email,
            provider_name=provider_name,
            provider_id=profile.id,
            profile=PrefilledProfile(
                email=profile.email,
                username=generate_username(profile.username),
                name=profile.name,
                image_url=profile.image_url,
            ),
            redirect_to=redirect_to,
        )
        return Redirect(
            with_query(f"/onboarding/{provider_name}", redirectTo=redirect_to),
            cookies=(self._cookies.commit_flow(onboarding),),
        )

    # Helpers

    def _get_provider_client(self, provider_name: str) -> ProviderClient:
        client = self._provider_clients.get(provider_name)
        if client is None:
            raise AuthServiceError("Unsupported provider.", "invalid_provider", 404)
        return client

    def _connections_notice(self, toast: Toast) -> Redirect:
        return Redirect(
            CONNECTIONS_PATH,
            cookies=(self._cookies.destroy_flow(), self._cookies.commit_toast(toast)),
        )

    def _is_verification_fresh(self, session_cookie: SessionCookie | None) -> bool:
        """Return True when the cookie records a 2FA check inside the freshness window."""
        if session_cookie is None or session_cookie.verified_at is None:
            return False
        return datetime.now(UTC) - session_cookie.verified_at <= self._two_factor_freshness

    def _commit_session(
        self,
        payload: SessionCookie,
        expires_at: datetime | None,
    ) -> CookieMutation:
        """Persist the session cookie; only remembered sessions outlive the browser."""
        return self._cookies.commit_session(payload, expires_at if payload.remember else None)

    async def _start_fresh_session(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        remember: bool,
        redirect_to: str | None,
        toast: Toast,
    ) -> Redirect:
        session_row = await self._sessions.create_session(db_session, user_id)
        return Redirect(
            safe_redirect(redirect_to),
            cookies=(
                self._commit_session(
                    SessionCookie(session_id=session_row.id, remember=remember),
                    session_row.expires_at,
                ),
                self._cookies.destroy_flow(),
                self._cookies.commit_toast(toast),
            ),
        )

    async def _ensure_username_available(self, db_session: AsyncSession, username: str) -> None:
        if await self._users.get_user_by_username(db_session, username) is not None:
            raise AuthServiceError(
                "A user already exists with this username", "username_taken", 400
            )

    async def _send_code_email(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
        to: str,
        subject: str,
        text: str,
    ) -> None:
        """Send a code email; on failure withdraw the challenge so no dead code lingers."""
        try:
            await self._email_sender.send_email(to=to, subject=subject, text=text)
        except EmailDeliveryError:
            await self._verifications.delete(db_session, target=target, type=type)
            raise

    async def _destroy_session_quietly(self, db_session: AsyncSession, session_id: UUID) -> None:
        try:
            await self._sessions.destroy_session(db_session, session_id)
        except SQLAlchemyError as exc:
            logger.warning("session_destroy_failed", session_id=str(session_id), error=str(exc))


@lru_cache
def get_auth_service() -> AuthService:
    """Create and cache auth service."""
    settings = get_settings()
    return AuthService(
        session_service=get_session_service(),
        verification_service=get_verification_service(),
        user_service=get_user_service(),
        connection_service=get_connection_service(),
        cookie_manager=get_cookie_manager(),
        email_sender=get_email_sender(),
        provider_clients={GITHUB_PROVIDER_NAME: get_github_oauth_client()},
        two_factor_freshness_seconds=settings.session.two_factor_freshness_seconds,
    )
