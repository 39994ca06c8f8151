"""FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import configure_structlog, get_settings
from app.db.session import dispose_engine
from app.error_handlers import register_exception_handlers
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.logging import LoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.security_headers import SecurityHeadersMiddleware
from app.routers import auth, health, oauth, settings as settings_router


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Release pooled database connections on shutdown."""
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service, lifespan=lifespan)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.session.secure_cookies)
    app.add_middleware(CorrelationIdMiddleware)

    register_exception_handlers(app, settings.app.environment)
    app.include_router(auth.router)
    app.include_router(oauth.router)
    app.include_router(settings_router.router)
    app.include_router(health.router)
    return app


app = create_app()
