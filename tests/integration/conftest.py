"""Shared integration-test fixtures using Postgres and Redis testcontainers."""

from __future__ import annotations

import os
import re
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from app.core.oauth import ProviderProfile
from docker.errors import DockerException

_CODE_PATTERN = re.compile(r"Here's your code: (\S+)")


def _clear_dependency_caches() -> None:
    """Clear all relevant singleton/lru-cache dependencies between test phases."""
    from app.config import get_settings
    from app.core.cookies import get_cookie_manager
    from app.core.oauth import get_github_oauth_client
    from app.core.passwords import get_password_hasher
    from app.core.sessions import get_session_service
    from app.db.session import get_engine, get_session_factory
    from app.middleware.rate_limit import get_redis_client
    from app.services.auth_service import get_auth_service
    from app.services.connection_service import get_connection_service
    from app.services.email_service import get_email_sender
    from app.services.user_service import get_user_service
    from app.services.verification_service import get_verification_service

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_redis_client.cache_clear()
    get_session_service.cache_clear()
    get_verification_service.cache_clear()
    get_user_service.cache_clear()
    get_password_hasher.cache_clear()
    get_connection_service.cache_clear()
    get_cookie_manager.cache_clear()
    get_email_sender.cache_clear()
    get_github_oauth_client.cache_clear()
    get_auth_service.cache_clear()


async def _close_async_client(client: Any) -> None:
    """Close async client instances regardless of redis-py close API version."""
    close = getattr(client, "aclose", None)
    if callable(close):
        await close()
        return

    close = getattr(client, "close", None)
    if callable(close):
        result = close()
        if hasattr(result, "__await__"):
            await result


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from app.db.session import dispose_engine, get_engine
    from app.middleware.rate_limit import get_redis_client

    if get_redis_client.cache_info().currsize:
        await _close_async_client(get_redis_client())
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        # testcontainers>=4 supports explicitly disabling default psycopg2 driver.
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _set_env_values(env_values: dict[str, str]) -> tuple[dict[str, str], Callable[[], None]]:
    """Apply env vars and return a restore callback."""
    original: dict[str, str] = {}
    missing: set[str] = set()
    for key, value in env_values.items():
        current = os.environ.get(key)
        if current is None:
            missing.add(key)
            original[key] = ""
        else:
            original[key] = current
        os.environ[key] = value

    def _restore() -> None:
        for key in env_values:
            if key in missing:
                os.environ.pop(key, None)
            else:
                os.environ[key] = original[key]

    return original, _restore


@dataclass
class SentEmail:
    to: str
    subject: str
    text: str


@dataclass
class RecordingEmailSender:
    """Email sender that keeps messages in memory instead of delivering them."""

    outbox: list[SentEmail] = field(default_factory=list)

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> None:
        self.outbox.append(SentEmail(to=to, subject=subject, text=text))

    def last_code(self) -> str:
        """Return the one-time code from the most recent message."""
        match = _CODE_PATTERN.search(self.outbox[-1].text)
        assert match is not None, self.outbox[-1].text
        return match.group(1)


@dataclass
class GitHubClientStub:
    """GitHub OAuth protocol stub returning a configurable profile."""

    profile: ProviderProfile = field(
        default_factory=lambda: ProviderProfile(
            id="1001",
            email="octocat@example.com",
            username="octocat",
            name="Octo Cat",
            image_url=None,
        )
    )
    state: str = "state-12345678"

    def generate_state(self) -> str:
        return self.state

    async def create_authorization_url(self, state: str) -> str:
        return f"https://github.com/login/oauth/authorize?state={state}"

    async def exchange_code_for_profile(self, code: str) -> ProviderProfile:
        del code
        return self.profile


@pytest.fixture(scope="session")
def integration_env() -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and configure app settings for integration tests."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(
                f"Docker daemon unavailable in CI for testcontainers-backed integration tests: {exc}"
            )
        pytest.skip(f"Docker daemon unavailable for testcontainers-backed integration tests: {exc}")

    database_url = _postgres_async_url(postgres)
    redis_url = _redis_connection_url(redis)

    env_values = {
        "APP__ENVIRONMENT": "development",
        "APP__SERVICE": "epic-notes",
        "APP__LOG_LEVEL": "INFO",
        "APP__PUBLIC_BASE_URL": "http://testserver",
        "DATABASE__URL": database_url,
        "REDIS__URL": redis_url,
        "SESSION__COOKIE_SECRET": "integration-cookie-secret-value",
        "SESSION__SECURE_COOKIES": "false",
        "OAUTH__GITHUB_CLIENT_ID": "integration-github-client-id",
        "OAUTH__GITHUB_CLIENT_SECRET": "integration-github-client-secret",
        "OAUTH__GITHUB_REDIRECT_URI": "http://testserver/auth/github/callback",
        "RATE_LIMIT__DEFAULT_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__AUTH_REQUESTS_PER_MINUTE": "10000",
    }

    _, restore_env = _set_env_values(env_values)
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": redis_url}
    finally:
        try:
            _clear_dependency_caches()
        finally:
            restore_env()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function")
async def db_session_factory(
    integration_env: dict[str, str],
    reset_state: None,
) -> async_sessionmaker[AsyncSession]:
    """Expose async session factory bound to integration Postgres."""
    del integration_env, reset_state
    from app.db.session import get_session_factory

    return get_session_factory()


@pytest.fixture(scope="function")
async def db_session(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a write-capable async DB session for test seeding and assertions."""
    async with db_session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
async def reset_state(
    integration_env: dict[str, str],
) -> AsyncIterator[None]:
    """Clear DB tables and flush Redis; isolate async singletons per event loop."""
    del integration_env
    from app.db.session import get_session_factory
    from app.middleware.rate_limit import get_redis_client
    from app.models import Connection, Password, Role, Session, User, Verification, user_roles

    await _dispose_async_singletons()
    _clear_dependency_caches()

    session_factory = get_session_factory()
    async with session_factory() as session:
        await session.execute(delete(Connection))
        await session.execute(delete(Session))
        await session.execute(delete(Verification))
        await session.execute(delete(Password))
        await session.execute(delete(user_roles))
        await session.execute(delete(User))
        await session.execute(delete(Role))
        await session.commit()

    await get_redis_client().flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
def email_outbox() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture(scope="function")
def github_stub() -> GitHubClientStub:
    return GitHubClientStub()


@pytest.fixture(scope="function")
def app_factory(
    integration_env: dict[str, str],
    email_outbox: RecordingEmailSender,
    github_stub: GitHubClientStub,
) -> Callable[[], Any]:
    """Build isolated FastAPI app instances with in-memory email and a GitHub stub."""
    del integration_env
    from app.config import get_settings
    from app.core.cookies import get_cookie_manager
    from app.core.sessions import get_session_service
    from app.main import create_app
    from app.services.auth_service import AuthService, get_auth_service
    from app.services.connection_service import get_connection_service
    from app.services.user_service import get_user_service
    from app.services.verification_service import get_verification_service

    def _auth_service() -> AuthService:
        return AuthService(
            session_service=get_session_service(),
            verification_service=get_verification_service(),
            user_service=get_user_service(),
            connection_service=get_connection_service(),
            cookie_manager=get_cookie_manager(),
            email_sender=email_outbox,
            provider_clients={"github": github_stub},
            two_factor_freshness_seconds=get_settings().session.two_factor_freshness_seconds,
        )

    def _factory() -> Any:
        app = create_app()
        app.dependency_overrides[get_auth_service] = _auth_service
        return app

    return _factory


@pytest.fixture(scope="function")
async def client(app_factory: Callable[[], Any]) -> AsyncIterator[AsyncClient]:
    """Yield an HTTP client that already holds a CSRF cookie and echoes it as a header."""
    async with AsyncClient(
        transport=ASGITransport(app=app_factory()), base_url="http://testserver"
    ) as http_client:
        response = await http_client.get("/csrf")
        http_client.headers["X-CSRF-Token"] = response.json()["csrf_token"]
        yield http_client


@pytest.fixture(scope="function")
async def user_factory(
    db_session: AsyncSession,
) -> Callable[..., Any]:
    """Create users with the default role and an optional bcrypt password."""
    from app.core.passwords import PasswordHasher
    from app.models import User
    from app.services.user_service import UserService

    user_service = UserService(password_hasher=PasswordHasher(rounds=4))

    async def _create(
        username: str,
        password: str | None = "kodylovesyou",
        email: str | None = None,
    ) -> User:
        return await user_service.create_user(
            db_session,
            email=email or f"{username}@example.com",
            username=username,
            name=username.title(),
            password=password,
        )

    return _create
