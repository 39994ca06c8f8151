"""Encrypted cookie payloads and the multi-step flow state union."""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Literal
from uuid import UUID

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.config import get_settings

SESSION_COOKIE_NAME = "en_session"
FLOW_COOKIE_NAME = "en_verification"
TOAST_COOKIE_NAME = "en_toast"
TOAST_TTL_SECONDS = 60


class _CookiePayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SessionCookie(_CookiePayload):
    """Session cookie contents: the opaque session id and last 2FA check."""

    session_id: UUID
    verified_at: datetime | None = None
    remember: bool = False


class PrefilledProfile(_CookiePayload):
    """Provider profile fields offered as onboarding defaults."""

    email: str
    username: str | None = None
    name: str | None = None
    image_url: str | None = None


class IdleFlow(_CookiePayload):
    kind: Literal["idle"] = "idle"


class AwaitingProviderCallback(_CookiePayload):
    """OAuth redirect issued; the callback must echo ``state``."""

    kind: Literal["awaiting_provider_callback"] = "awaiting_provider_callback"
    state: str
    provider_name: str
    redirect_to: str | None = None


class AwaitingOnboarding(_CookiePayload):
    """Email ownership proven; the account form is next."""

    kind: Literal["awaiting_onboarding"] = "awaiting_onboarding"
    email: str


class AwaitingProviderOnboarding(_CookiePayload):
    """Unknown external identity; the account form is next."""

    kind: Literal["awaiting_provider_onboarding"] = "awaiting_provider_onboarding"
    email: str
    provider_name: str
    provider_id: str
    profile: PrefilledProfile
    redirect_to: str | None = None


class AwaitingTwoFA(_CookiePayload):
    """Password or provider login accepted; the session is parked until 2FA succeeds."""

    kind: Literal["awaiting_two_fa"] = "awaiting_two_fa"
    session_id: UUID
    user_id: UUID
    remember: bool = False
    redirect_to: str | None = None


class AwaitingPasswordReset(_CookiePayload):
    kind: Literal["awaiting_password_reset"] = "awaiting_password_reset"
    username: str


class AwaitingEmailChange(_CookiePayload):
    kind: Literal["awaiting_email_change"] = "awaiting_email_change"
    user_id: UUID
    new_email: str


FlowState = Annotated[
    IdleFlow
    | AwaitingProviderCallback
    | AwaitingOnboarding
    | AwaitingProviderOnboarding
    | AwaitingTwoFA
    | AwaitingPasswordReset
    | AwaitingEmailChange,
    Field(discriminator="kind"),
]
_FLOW_STATE_ADAPTER: TypeAdapter[FlowState] = TypeAdapter(FlowState)


class Toast(_CookiePayload):
    """One-shot notice displayed by the next rendered page."""

    type: Literal["message", "success", "error"] = "message"
    title: str | None = None
    description: str


@dataclass(frozen=True)
class CookieMutation:
    """A Set-Cookie instruction; ``value=None`` deletes the cookie."""

    name: str
    value: str | None
    expires: datetime | None = None
    max_age: int | None = None


@dataclass(frozen=True)
class RequestCookies:
    """Decoded view of the auth-related cookies presented by one request."""

    session: SessionCookie | None
    flow: FlowState
    toast: Toast | None = None


class CookieManager:
    """Encrypt, decrypt, and build mutations for the application's cookies."""

    def __init__(self, secret: str, flow_ttl_seconds: int, secure: bool = True) -> None:
        self._fernet = Fernet(self._build_fernet_key(secret))
        self._flow_ttl_seconds = flow_ttl_seconds
        self.secure = secure

    def read(self, cookies: Mapping[str, str]) -> RequestCookies:
        """Decode the session, flow, and toast cookies; tampered values read as absent."""
        return RequestCookies(
            session=self.decode_session(cookies.get(SESSION_COOKIE_NAME)),
            flow=self.decode_flow(cookies.get(FLOW_COOKIE_NAME)),
            toast=self.decode_toast(cookies.get(TOAST_COOKIE_NAME)),
        )

    def decode_session(self, raw_value: str | None) -> SessionCookie | None:
        """Decode the session cookie; its lifetime is governed by the session row."""
        plaintext = self._decrypt(raw_value, ttl_seconds=None)
        if plaintext is None:
            return None
        try:
            return SessionCookie.model_validate_json(plaintext)
        except ValidationError:
            return None

    def decode_flow(self, raw_value: str | None) -> FlowState:
        """Decode the flow cookie, falling back to idle when absent, stale, or invalid."""
        plaintext = self._decrypt(raw_value, ttl_seconds=self._flow_ttl_seconds)
        if plaintext is None:
            return IdleFlow()
        try:
            return _FLOW_STATE_ADAPTER.validate_json(plaintext)
        except ValidationError:
            return IdleFlow()

    def decode_toast(self, raw_value: str | None) -> Toast | None:
        plaintext = self._decrypt(raw_value, ttl_seconds=TOAST_TTL_SECONDS)
        if plaintext is None:
            return None
        try:
            return Toast.model_validate_json(plaintext)
        except ValidationError:
            return None

    def commit_session(self, payload: SessionCookie, expires: datetime | None) -> CookieMutation:
        """Persist the session cookie; ``expires=None`` yields a browser-session cookie."""
        return CookieMutation(
            name=SESSION_COOKIE_NAME, value=self._encrypt(payload), expires=expires
        )

    def destroy_session(self) -> CookieMutation:
        return CookieMutation(name=SESSION_COOKIE_NAME, value=None)

    def commit_flow(self, state: FlowState) -> CookieMutation:
        if isinstance(state, IdleFlow):
            return self.destroy_flow()
        return CookieMutation(
            name=FLOW_COOKIE_NAME,
            value=self._encrypt(state),
            max_age=self._flow_ttl_seconds,
        )

    def destroy_flow(self) -> CookieMutation:
        return CookieMutation(name=FLOW_COOKIE_NAME, value=None)

    def commit_toast(self, toast: Toast) -> CookieMutation:
        return CookieMutation(
            name=TOAST_COOKIE_NAME, value=self._encrypt(toast), max_age=TOAST_TTL_SECONDS
        )

    def destroy_toast(self) -> CookieMutation:
        return CookieMutation(name=TOAST_COOKIE_NAME, value=None)

    def _encrypt(self, payload: BaseModel) -> str:
        return self._fernet.encrypt(payload.model_dump_json().encode("utf-8")).decode("utf-8")

    def _decrypt(self, raw_value: str | None, ttl_seconds: int | None) -> bytes | None:
        if not raw_value:
            return None
        try:
            return self._fernet.decrypt(raw_value.encode("utf-8"), ttl=ttl_seconds)
        except (InvalidToken, ValueError):
            return None

    @staticmethod
    def _build_fernet_key(secret: str) -> bytes:
        """Derive a valid Fernet key from the configured cookie secret."""
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest)


@lru_cache
def get_cookie_manager() -> CookieManager:
    """Create and cache the cookie manager from settings."""
    settings = get_settings()
    return CookieManager(
        secret=settings.session.cookie_secret.get_secret_value(),
        flow_ttl_seconds=settings.session.flow_ttl_seconds,
        secure=settings.session.secure_cookies,
    )
