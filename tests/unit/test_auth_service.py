"""Unit tests for auth orchestration using in-memory collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlparse
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.core.cookies import (
    FLOW_COOKIE_NAME,
    SESSION_COOKIE_NAME,
    TOAST_COOKIE_NAME,
    AwaitingEmailChange,
    AwaitingProviderCallback,
    AwaitingProviderOnboarding,
    AwaitingTwoFA,
    CookieManager,
    FlowState,
    IdleFlow,
    RequestCookies,
    SessionCookie,
)
from app.core.oauth import OAuthProtocolError, ProviderProfile
from app.core.outcomes import Redirect
from app.models.session import Session
from app.models.user import User
from app.services.auth_service import CONNECTIONS_PATH, AuthService, AuthServiceError
from app.services.connection_service import LinkDecision, LinkResult
from app.services.email_service import EmailDeliveryError
from app.services.verification_service import PreparedVerification

_DB: Any = object()
_PROFILE = ProviderProfile(
    id="1001",
    email="kody@example.com",
    username="Kody Koala!",
    name="Kody",
    image_url="https://avatars.example.com/1001",
)


class _FakeSessions:
    def __init__(self) -> None:
        self.rows: dict[UUID, Session] = {}
        self.destroyed: list[UUID] = []
        self.revoked_users: list[UUID] = []
        self.fail_destroy = False

    async def create_session(
        self, db_session: Any, user_id: UUID, session_id: UUID | None = None
    ) -> Session:
        row = Session(
            id=session_id or uuid4(),
            user_id=user_id,
            expires_at=datetime.now(UTC) + timedelta(days=30),
        )
        self.rows[row.id] = row
        return row

    async def resolve_session(self, db_session: Any, session_id: UUID) -> UUID | None:
        row = self.rows.get(session_id)
        return row.user_id if row is not None else None

    async def get_session_expiration(self, db_session: Any, session_id: UUID) -> datetime | None:
        row = self.rows.get(session_id)
        return row.expires_at if row is not None else None

    async def destroy_session(self, db_session: Any, session_id: UUID) -> None:
        if self.fail_destroy:
            raise OperationalError("DELETE", {}, Exception("database unavailable"))
        self.destroyed.append(session_id)
        self.rows.pop(session_id, None)

    async def destroy_user_sessions(self, db_session: Any, user_id: UUID) -> int:
        self.revoked_users.append(user_id)
        return 0


@dataclass
class _FakeVerifications:
    two_factor_users: set[UUID] = field(default_factory=set)
    code_valid: bool = True
    consume_result: bool = True
    consumed: list[tuple[str, str]] = field(default_factory=list)
    deleted: list[tuple[str, str]] = field(default_factory=list)

    async def has_two_factor(self, db_session: Any, user_id: UUID) -> bool:
        return user_id in self.two_factor_users

    async def is_code_valid(
        self, db_session: Any, target: str, type: str, code: str  # noqa: A002
    ) -> bool:
        return self.code_valid

    async def consume_code(
        self, db_session: Any, target: str, type: str, code: str  # noqa: A002
    ) -> bool:
        self.consumed.append((target, type))
        return self.consume_result

    async def prepare_verification(
        self,
        db_session: Any,
        target: str,
        type: str,  # noqa: A002
        redirect_to: str | None = None,
    ) -> PreparedVerification:
        return PreparedVerification(
            otp="123456",
            redirect_to=f"/verify?type={type}&target={target}",
            verify_url=f"https://notes.example.com/verify?type={type}&code=123456",
        )

    async def delete(self, db_session: Any, target: str, type: str) -> bool:  # noqa: A002
        self.deleted.append((target, type))
        return True


class _FakeUsers:
    def __init__(self, users: list[User] | None = None) -> None:
        self.users = {user.id: user for user in users or []}
        self.passwords: dict[UUID, str] = {}

    async def authenticate(self, db_session: Any, username: str, password: str) -> User | None:
        for user in self.users.values():
            if user.username == username and self.passwords.get(user.id) == password:
                return user
        return None

    async def get_user_by_id(self, db_session: Any, user_id: UUID) -> User | None:
        return self.users.get(user_id)

    async def get_user_by_email(self, db_session: Any, email: str) -> User | None:
        return next((u for u in self.users.values() if u.email == email), None)

    async def get_user_by_username(self, db_session: Any, username: str) -> User | None:
        return next((u for u in self.users.values() if u.username == username), None)

    async def get_user_by_username_or_email(self, db_session: Any, value: str) -> User | None:
        return next(
            (u for u in self.users.values() if value in {u.username, u.email}),
            None,
        )


@dataclass
class _FakeConnections:
    link: LinkResult = field(default_factory=lambda: LinkResult(LinkDecision.ONBOARD))
    calls: list[UUID | None] = field(default_factory=list)

    async def resolve_link(
        self,
        db_session: Any,
        provider_name: str,
        profile: ProviderProfile,
        current_user_id: UUID | None,
    ) -> LinkResult:
        self.calls.append(current_user_id)
        return self.link


@dataclass
class _FakeProvider:
    error: OAuthProtocolError | None = None
    exchanged: list[str] = field(default_factory=list)

    def generate_state(self) -> str:
        return "state-123"

    async def create_authorization_url(self, state: str) -> str:
        return f"https://github.com/login/oauth/authorize?state={state}"

    async def exchange_code_for_profile(self, code: str) -> ProviderProfile:
        self.exchanged.append(code)
        if self.error is not None:
            raise self.error
        return _PROFILE


@dataclass
class _FakeEmailSender:
    fail: bool = False
    sent: list[dict[str, Any]] = field(default_factory=list)

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> None:
        if self.fail:
            raise EmailDeliveryError("Unable to send email.")
        self.sent.append({"to": to, "subject": subject, "text": text})


@dataclass
class _Harness:
    service: AuthService
    cookies: CookieManager
    sessions: _FakeSessions
    verifications: _FakeVerifications
    users: _FakeUsers
    connections: _FakeConnections
    provider: _FakeProvider
    email: _FakeEmailSender

    def read(self, outcome: Redirect) -> dict[str, Any]:
        """Decode the cookie mutations of an outcome by cookie name."""
        decoded: dict[str, Any] = {}
        for mutation in outcome.cookies:
            if mutation.value is None:
                decoded[mutation.name] = None
            elif mutation.name == SESSION_COOKIE_NAME:
                decoded[mutation.name] = self.cookies.decode_session(mutation.value)
            elif mutation.name == FLOW_COOKIE_NAME:
                decoded[mutation.name] = self.cookies.decode_flow(mutation.value)
            elif mutation.name == TOAST_COOKIE_NAME:
                decoded[mutation.name] = self.cookies.decode_toast(mutation.value)
        return decoded

    def mutation(self, outcome: Redirect, name: str) -> Any:
        return next(mutation for mutation in outcome.cookies if mutation.name == name)


def _build(users: list[User] | None = None, freshness_seconds: int = 7200) -> _Harness:
    cookie_manager = CookieManager(secret="unit-test-cookie-secret", flow_ttl_seconds=600)
    harness_parts = {
        "sessions": _FakeSessions(),
        "verifications": _FakeVerifications(),
        "users": _FakeUsers(users),
        "connections": _FakeConnections(),
        "provider": _FakeProvider(),
        "email": _FakeEmailSender(),
    }
    service = AuthService(
        session_service=harness_parts["sessions"],  # type: ignore[arg-type]
        verification_service=harness_parts["verifications"],  # type: ignore[arg-type]
        user_service=harness_parts["users"],  # type: ignore[arg-type]
        connection_service=harness_parts["connections"],  # type: ignore[arg-type]
        cookie_manager=cookie_manager,
        email_sender=harness_parts["email"],
        provider_clients={"github": harness_parts["provider"]},
        two_factor_freshness_seconds=freshness_seconds,
    )
    return _Harness(service=service, cookies=cookie_manager, **harness_parts)


def _user(username: str = "kody") -> User:
    return User(id=uuid4(), email=f"{username}@example.com", username=username, name="Kody")


def _cookies(
    session: SessionCookie | None = None,
    flow: FlowState | None = None,
) -> RequestCookies:
    return RequestCookies(session=session, flow=flow or IdleFlow())


def _callback_flow() -> AwaitingProviderCallback:
    return AwaitingProviderCallback(state="state-123", provider_name="github", redirect_to=None)


# Provider callback decision table


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("decision", "title"),
    [
        (LinkDecision.ALREADY_CONNECTED, "Already Connected"),
        (LinkDecision.CONNECTED_TO_ANOTHER, "Already Connected"),
        (LinkDecision.CONNECTED_CURRENT_USER, "Connected"),
    ],
)
async def test_callback_for_logged_in_user_redirects_to_connections(
    decision: LinkDecision, title: str
) -> None:
    user = _user()
    harness = _build([user])
    session_row = await harness.sessions.create_session(_DB, user.id)
    harness.connections.link = LinkResult(decision, user.id)

    outcome = await harness.service.complete_provider_callback(
        _DB,
        _cookies(SessionCookie(session_id=session_row.id), _callback_flow()),
        provider_name="github",
        state="state-123",
        code="auth-code",
    )

    decoded = harness.read(outcome)
    assert outcome.location == CONNECTIONS_PATH
    assert decoded[FLOW_COOKIE_NAME] is None
    assert decoded[TOAST_COOKIE_NAME].title == title
    assert harness.connections.calls == [user.id]
    assert SESSION_COOKIE_NAME not in decoded


@pytest.mark.asyncio
async def test_callback_logs_in_existing_owner_with_remembered_session() -> None:
    user = _user()
    harness = _build([user])
    harness.connections.link = LinkResult(LinkDecision.LOGIN_EXISTING, user.id)

    outcome = await harness.service.complete_provider_callback(
        _DB, _cookies(flow=_callback_flow()), "github", state="state-123", code="auth-code"
    )

    decoded = harness.read(outcome)
    session_cookie = decoded[SESSION_COOKIE_NAME]
    assert outcome.location == "/"
    assert session_cookie.remember is True
    assert harness.sessions.rows[session_cookie.session_id].user_id == user.id
    assert harness.mutation(outcome, SESSION_COOKIE_NAME).expires is not None
    assert decoded[FLOW_COOKIE_NAME] is None


@pytest.mark.asyncio
async def test_callback_connected_by_email_lands_on_connections_with_toast() -> None:
    user = _user()
    harness = _build([user])
    harness.connections.link = LinkResult(LinkDecision.CONNECTED_BY_EMAIL, user.id)

    outcome = await harness.service.complete_provider_callback(
        _DB, _cookies(flow=_callback_flow()), "github", state="state-123", code="auth-code"
    )

    decoded = harness.read(outcome)
    assert outcome.location == CONNECTIONS_PATH
    assert decoded[SESSION_COOKIE_NAME] is not None
    assert decoded[TOAST_COOKIE_NAME].type == "success"


@pytest.mark.asyncio
async def test_callback_for_unknown_identity_starts_provider_onboarding() -> None:
    harness = _build()

    outcome = await harness.service.complete_provider_callback(
        _DB, _cookies(flow=_callback_flow()), "github", state="state-123", code="auth-code"
    )

    flow = harness.read(outcome)[FLOW_COOKIE_NAME]
    assert outcome.location == "/onboarding/github"
    assert isinstance(flow, AwaitingProviderOnboarding)
    assert flow.provider_id == "1001"
    assert flow.email == "kody@example.com"
    assert flow.profile.username == "kody_koala_"
    assert harness.sessions.rows == {}


@pytest.mark.asyncio
async def test_callback_login_with_two_factor_parks_session_without_creating_it() -> None:
    """A provider login for a 2FA user yields a challenge, never a Session row."""
    user = _user()
    harness = _build([user])
    harness.verifications.two_factor_users.add(user.id)
    harness.connections.link = LinkResult(LinkDecision.LOGIN_EXISTING, user.id)

    outcome = await harness.service.complete_provider_callback(
        _DB, _cookies(flow=_callback_flow()), "github", state="state-123", code="auth-code"
    )

    decoded = harness.read(outcome)
    parsed = urlparse(outcome.location)
    assert parsed.path == "/verify"
    assert parse_qs(parsed.query)["type"] == ["2fa"]
    assert parse_qs(parsed.query)["target"] == [str(user.id)]
    assert isinstance(decoded[FLOW_COOKIE_NAME], AwaitingTwoFA)
    assert decoded[FLOW_COOKIE_NAME].remember is True
    assert SESSION_COOKIE_NAME not in decoded
    assert harness.sessions.rows == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("flow", "state", "code"),
    [
        (None, "state-123", "auth-code"),
        (_callback_flow(), "other-state", "auth-code"),
        (_callback_flow(), None, "auth-code"),
        (_callback_flow(), "state-123", None),
    ],
)
async def test_callback_state_mismatch_fails_without_exchanging_code(
    flow: FlowState | None, state: str | None, code: str | None
) -> None:
    harness = _build()

    outcome = await harness.service.complete_provider_callback(
        _DB, _cookies(flow=flow), "github", state=state, code=code
    )

    decoded = harness.read(outcome)
    assert outcome.location.startswith("/login")
    assert decoded[FLOW_COOKIE_NAME] is None
    assert decoded[TOAST_COOKIE_NAME].title == "Auth Failed"
    assert harness.provider.exchanged == []
    assert harness.connections.calls == []


@pytest.mark.asyncio
async def test_callback_provider_error_redirects_to_login() -> None:
    harness = _build()
    harness.provider.error = OAuthProtocolError(
        "OAuth token exchange failed.", "invalid_credentials", 401
    )

    outcome = await harness.service.complete_provider_callback(
        _DB, _cookies(flow=_callback_flow()), "github", state="state-123", code="auth-code"
    )

    assert outcome.location.startswith("/login")
    assert harness.read(outcome)[TOAST_COOKIE_NAME].description == (
        "There was an error authenticating with GitHub."
    )


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected() -> None:
    harness = _build()

    with pytest.raises(AuthServiceError) as exc_info:
        await harness.service.start_provider_login("gitlab", redirect_to=None)

    assert exc_info.value.code == "invalid_provider"


@pytest.mark.asyncio
async def test_start_provider_login_stores_state_and_safe_redirect() -> None:
    harness = _build()

    outcome = await harness.service.start_provider_login("github", redirect_to="//evil.example")

    flow = harness.read(outcome)[FLOW_COOKIE_NAME]
    assert outcome.location.startswith("https://github.com/login/oauth/authorize")
    assert isinstance(flow, AwaitingProviderCallback)
    assert flow.state == "state-123"
    assert flow.redirect_to == "/"


# Password login and second factor


@pytest.mark.asyncio
async def test_login_with_wrong_password_raises_uniform_error() -> None:
    harness = _build([_user()])

    with pytest.raises(AuthServiceError) as exc_info:
        await harness.service.login_with_password(
            _DB, _cookies(), "kody", "wrong", remember=False, redirect_to=None
        )

    assert exc_info.value.detail == "Invalid username or password"
    assert exc_info.value.code == "invalid_credentials"


@pytest.mark.asyncio
async def test_login_without_remember_issues_browser_session_cookie() -> None:
    user = _user()
    harness = _build([user])
    harness.users.passwords[user.id] = "kodylovesyou"

    outcome = await harness.service.login_with_password(
        _DB, _cookies(), "kody", "kodylovesyou", remember=False, redirect_to="/notes"
    )

    assert outcome.location == "/notes"
    assert harness.mutation(outcome, SESSION_COOKIE_NAME).expires is None
    assert len(harness.sessions.rows) == 1


@pytest.mark.asyncio
async def test_two_factor_login_completes_with_parked_session_id() -> None:
    user = _user()
    harness = _build([user])
    harness.users.passwords[user.id] = "kodylovesyou"
    harness.verifications.two_factor_users.add(user.id)

    parked_outcome = await harness.service.login_with_password(
        _DB, _cookies(), "kody", "kodylovesyou", remember=True, redirect_to="/notes"
    )
    parked = harness.read(parked_outcome)[FLOW_COOKIE_NAME]
    assert isinstance(parked, AwaitingTwoFA)
    assert harness.sessions.rows == {}

    outcome = await harness.service.verify(
        _DB,
        _cookies(flow=parked),
        target=str(user.id),
        type="2fa",
        code="123456",
        redirect_to=None,
    )

    decoded = harness.read(outcome)
    session_cookie = decoded[SESSION_COOKIE_NAME]
    assert outcome.location == "/notes"
    assert session_cookie.session_id == parked.session_id
    assert session_cookie.verified_at is not None
    assert session_cookie.remember is True
    assert decoded[FLOW_COOKIE_NAME] is None
    assert harness.sessions.rows[parked.session_id].user_id == user.id


@pytest.mark.asyncio
async def test_invalid_two_factor_code_keeps_session_parked() -> None:
    user = _user()
    harness = _build([user])
    harness.verifications.code_valid = False
    parked = AwaitingTwoFA(session_id=uuid4(), user_id=user.id)

    with pytest.raises(AuthServiceError) as exc_info:
        await harness.service.verify(
            _DB, _cookies(flow=parked), str(user.id), "2fa", "000000", redirect_to=None
        )

    assert exc_info.value.code == "invalid_code"
    assert harness.sessions.rows == {}


@pytest.mark.asyncio
async def test_should_request_two_fa_honours_freshness_window() -> None:
    user = _user()
    harness = _build([user], freshness_seconds=7200)
    session_id = uuid4()

    assert await harness.service.should_request_two_fa(_DB, _cookies(), user.id) is False

    harness.verifications.two_factor_users.add(user.id)
    never_verified = _cookies(SessionCookie(session_id=session_id))
    fresh = _cookies(SessionCookie(session_id=session_id, verified_at=datetime.now(UTC)))
    stale = _cookies(
        SessionCookie(
            session_id=session_id,
            verified_at=datetime.now(UTC) - timedelta(seconds=7201),
        )
    )

    assert await harness.service.should_request_two_fa(_DB, never_verified, user.id) is True
    assert await harness.service.should_request_two_fa(_DB, fresh, user.id) is False
    assert await harness.service.should_request_two_fa(_DB, stale, user.id) is True


@pytest.mark.asyncio
async def test_parked_flow_always_requests_two_fa() -> None:
    user = _user()
    harness = _build([user])
    parked = AwaitingTwoFA(session_id=uuid4(), user_id=user.id)

    assert await harness.service.should_request_two_fa(_DB, _cookies(flow=parked), user.id)


# Session resolution and logout


@pytest.mark.asyncio
async def test_stale_session_cookie_forces_logout() -> None:
    harness = _build()
    cookies = _cookies(SessionCookie(session_id=uuid4()))

    outcome = await harness.service.get_user_id(_DB, cookies)

    assert isinstance(outcome, Redirect)
    assert outcome.location == "/"
    assert harness.read(outcome)[SESSION_COOKIE_NAME] is None


@pytest.mark.asyncio
async def test_require_user_id_redirects_anonymous_to_login() -> None:
    harness = _build()

    outcome = await harness.service.require_user_id(
        _DB, _cookies(), redirect_to="/settings/profile"
    )

    assert isinstance(outcome, Redirect)
    assert outcome.location == "/login?redirectTo=%2Fsettings%2Fprofile"


@pytest.mark.asyncio
async def test_logout_is_idempotent() -> None:
    user = _user()
    harness = _build([user])
    session_row = await harness.sessions.create_session(_DB, user.id)
    cookies = _cookies(SessionCookie(session_id=session_row.id))

    first = await harness.service.logout(_DB, cookies)
    second = await harness.service.logout(_DB, cookies)
    anonymous = await harness.service.logout(_DB, _cookies())

    for outcome in (first, second, anonymous):
        assert outcome.location == "/"
        assert harness.read(outcome)[SESSION_COOKIE_NAME] is None
    assert harness.sessions.rows == {}


@pytest.mark.asyncio
async def test_logout_clears_cookie_when_storage_fails() -> None:
    harness = _build()
    harness.sessions.fail_destroy = True

    outcome = await harness.service.logout(_DB, _cookies(SessionCookie(session_id=uuid4())))

    assert harness.read(outcome)[SESSION_COOKIE_NAME] is None


# Emailed verification flows


@pytest.mark.asyncio
async def test_signup_email_failure_withdraws_the_challenge() -> None:
    harness = _build()
    harness.email.fail = True

    with pytest.raises(EmailDeliveryError):
        await harness.service.start_signup(_DB, email="New@Example.com")

    assert harness.verifications.deleted == [("new@example.com", "onboarding")]


@pytest.mark.asyncio
async def test_signup_for_existing_email_is_rejected() -> None:
    harness = _build([_user()])

    with pytest.raises(AuthServiceError) as exc_info:
        await harness.service.start_signup(_DB, email="kody@example.com")

    assert exc_info.value.code == "user_exists"
    assert harness.email.sent == []


@pytest.mark.asyncio
async def test_password_reset_for_unknown_account_sends_nothing() -> None:
    harness = _build()

    outcome = await harness.service.start_password_reset(_DB, username_or_email="ghost")

    assert outcome.location.startswith("/verify")
    assert harness.email.sent == []


@pytest.mark.asyncio
async def test_password_reset_emails_account_address() -> None:
    harness = _build([_user()])

    await harness.service.start_password_reset(_DB, username_or_email="kody")

    assert [message["to"] for message in harness.email.sent] == ["kody@example.com"]


@pytest.mark.asyncio
async def test_onboarding_code_moves_flow_to_account_form() -> None:
    harness = _build()

    outcome = await harness.service.verify(
        _DB, _cookies(), "new@example.com", "onboarding", "123456", redirect_to="/notes"
    )

    flow = harness.read(outcome)[FLOW_COOKIE_NAME]
    assert outcome.location == "/onboarding?redirectTo=%2Fnotes"
    assert flow.email == "new@example.com"


@pytest.mark.asyncio
async def test_consumed_code_is_rejected() -> None:
    harness = _build()
    harness.verifications.consume_result = False

    with pytest.raises(AuthServiceError) as exc_info:
        await harness.service.verify(
            _DB, _cookies(), "new@example.com", "onboarding", "123456", redirect_to=None
        )

    assert exc_info.value.detail == "Invalid code"


@pytest.mark.asyncio
async def test_change_email_code_requires_matching_flow() -> None:
    user = _user()
    harness = _build([user])
    other_flow = AwaitingEmailChange(user_id=uuid4(), new_email="new@example.com")

    with pytest.raises(AuthServiceError):
        await harness.service.verify(
            _DB, _cookies(flow=other_flow), str(user.id), "change-email", "123456", None
        )

    assert harness.verifications.consumed == []
