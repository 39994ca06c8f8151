"""GitHub OAuth protocol operations via authlib."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from authlib.integrations.httpx_client import AsyncOAuth2Client

from app.config import get_settings

GITHUB_PROVIDER_NAME = "github"
GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"
PROVIDER_LABELS = {GITHUB_PROVIDER_NAME: "GitHub"}


class OAuthProtocolError(Exception):
    """Raised when OAuth protocol operations fail."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderProfile:
    """Normalized external identity returned by a provider."""

    id: str
    email: str
    username: str | None = None
    name: str | None = None
    image_url: str | None = None


class GitHubOAuthClient:
    """Authlib-backed GitHub OAuth client."""

    provider_name = GITHUB_PROVIDER_NAME

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri

    def generate_state(self) -> str:
        """Generate OAuth state token."""
        return secrets.token_urlsafe(32)

    async def create_authorization_url(self, state: str) -> str:
        """Build the GitHub authorization URL for the given state."""
        client = self._build_client()
        try:
            authorization_url, _ = client.create_authorization_url(
                GITHUB_AUTHORIZE_URL,
                state=state,
            )
        finally:
            await client.aclose()
        return authorization_url

    async def exchange_code_for_profile(self, code: str) -> ProviderProfile:
        """Exchange an authorization code and load the GitHub user profile."""
        client = self._build_client()
        try:
            try:
                await client.fetch_token(
                    GITHUB_TOKEN_URL,
                    code=code,
                    headers={"Accept": "application/json"},
                )
            except Exception as exc:
                raise OAuthProtocolError(
                    "OAuth token exchange failed.", "invalid_credentials", 401
                ) from exc
            user_payload = await self._get_json(client, "/user")
            email = user_payload.get("email")
            if not email:
                email = self._primary_email(await self._get_json(client, "/user/emails"))
        finally:
            await client.aclose()

        if not email or user_payload.get("id") is None:
            raise OAuthProtocolError(
                "Provider profile is missing an email.", "invalid_credentials", 401
            )
        return ProviderProfile(
            id=str(user_payload["id"]),
            email=str(email).lower(),
            username=user_payload.get("login"),
            name=user_payload.get("name"),
            image_url=user_payload.get("avatar_url"),
        )

    async def _get_json(self, client: AsyncOAuth2Client, path: str) -> Any:
        """Fetch a GitHub API resource with the exchanged token."""
        try:
            response = await client.get(
                f"{GITHUB_API_URL}{path}",
                headers={"Accept": "application/vnd.github+json"},
            )
            response.raise_for_status()
            return response.json()
        except Exception as exc:
            raise OAuthProtocolError(
                "OAuth provider unavailable.", "invalid_credentials", 503
            ) from exc

    @staticmethod
    def _primary_email(emails: Any) -> str | None:
        if not isinstance(emails, list):
            return None
        verified = [entry for entry in emails if isinstance(entry, dict) and entry.get("verified")]
        for entry in verified:
            if entry.get("primary"):
                return entry.get("email")
        return verified[0].get("email") if verified else None

    def _build_client(self) -> AsyncOAuth2Client:
        """Build authlib OAuth2 client for GitHub endpoints."""
        return AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            scope="read:user user:email",
            redirect_uri=self._redirect_uri,
            token_endpoint_auth_method="client_secret_post",
            timeout=10.0,
        )


@lru_cache
def get_github_oauth_client() -> GitHubOAuthClient:
    """Build and cache GitHub OAuth client from settings."""
    settings = get_settings()
    return GitHubOAuthClient(
        client_id=settings.oauth.github_client_id,
        client_secret=settings.oauth.github_client_secret.get_secret_value(),
        redirect_uri=str(settings.oauth.github_redirect_uri),
    )

