"""Redis-backed sliding-window rate limiting middleware."""

from __future__ import annotations

import math
import time
from functools import lru_cache
from typing import Protocol
from uuid import uuid4

import structlog
from fastapi import Request
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from app.config import get_settings
from app.dependencies import get_client_ip

logger = structlog.get_logger(__name__)
_WINDOW_SECONDS = 60
AUTH_PATHS = frozenset(
    {"/login", "/signup", "/verify", "/forgot-password", "/reset-password", "/onboarding"}
)
# Paths that check one-time codes on page load as well as on submit.
CODE_CHECK_PATHS = frozenset({"/verify"})


class SlidingWindowRedis(Protocol):
    """Protocol for Redis operations used by the rate limiter."""

    async def zremrangebyscore(self, key: str, min: str | int, max: int) -> int:
        """Delete members with score inside an inclusive range."""

    async def zcard(self, key: str) -> int:
        """Return sorted-set cardinality."""

    async def zadd(self, key: str, mapping: dict[str, int]) -> int:
        """Add one or more scored members to sorted set."""

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Apply TTL to key."""


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache the Redis client shared by rate limiting and health checks."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply per-client sliding-window request limits, tighter on credential routes."""

    def __init__(
        self,
        app,
        redis_client: SlidingWindowRedis | None = None,
        default_requests_per_minute: int | None = None,
        auth_requests_per_minute: int | None = None,
    ) -> None:
        """Initialize middleware with optional explicit limits for testability."""
        super().__init__(app)
        if default_requests_per_minute is None or auth_requests_per_minute is None:
            limits = get_settings().rate_limit
            default_requests_per_minute = (
                default_requests_per_minute or limits.default_requests_per_minute
            )
            auth_requests_per_minute = auth_requests_per_minute or limits.auth_requests_per_minute

        self._redis = redis_client or get_redis_client()
        self._default_limit = default_requests_per_minute
        self._auth_limit = auth_requests_per_minute
        self._window_milliseconds = _WINDOW_SECONDS * 1000

    async def dispatch(self, request: Request, call_next) -> Response:
        """Reject requests exceeding the configured per-minute threshold."""
        limit = self._resolve_limit(request.method, request.url.path)
        bucket_key = self._build_bucket_key(request)
        now_ms = int(time.time() * 1000)
        window_start = now_ms - self._window_milliseconds

        try:
            await self._redis.zremrangebyscore(bucket_key, "-inf", window_start)
            current_count = await self._redis.zcard(bucket_key)
            if current_count >= limit:
                logger.warning(
                    "rate_limited",
                    path=request.url.path,
                    method=request.method,
                    limit=limit,
                )
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded.", "code": "rate_limited"},
                )

            member = f"{now_ms}:{uuid4()}"
            await self._redis.zadd(bucket_key, {member: now_ms})
            await self._redis.expire(bucket_key, math.ceil(self._window_milliseconds / 1000) + 1)
        except RedisError:
            # Fail open: availability wins over throttling when Redis is down.
            logger.warning(
                "rate_limit_backend_unavailable",
                path=request.url.path,
                method=request.method,
            )

        return await call_next(request)

    def _resolve_limit(self, method: str, path: str) -> int:
        """Resolve path-specific limit override."""
        if path in CODE_CHECK_PATHS:
            return self._auth_limit
        if method.upper() != "GET" and (path in AUTH_PATHS or path.startswith("/onboarding/")):
            return self._auth_limit
        return self._default_limit

    def _build_bucket_key(self, request: Request) -> str:
        """Build Redis key using route and caller network identity."""
        client_id = get_client_ip(request)
        return f"rate_limit:{request.url.path}:{client_id}"
