"""Database-backed login session management."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from functools import lru_cache
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.session import Session
from app.models.user import User

logger = structlog.get_logger(__name__)


class SessionService:
    """Service for session creation, resolution, and revocation."""

    def __init__(self, session_ttl_seconds: int) -> None:
        self._session_ttl_seconds = session_ttl_seconds

    async def create_session(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        session_id: UUID | None = None,
        now: datetime | None = None,
    ) -> Session:
        """Create a session row expiring one TTL from now.

        ``session_id`` lets a parked two-factor login materialize the id it
        was issued before the second factor was checked.
        """
        issued_at = now or datetime.now(UTC)
        session_row = Session(
            id=session_id or uuid4(),
            user_id=user_id,
            expires_at=issued_at + timedelta(seconds=self._session_ttl_seconds),
        )
        try:
            db_session.add(session_row)
            await db_session.flush()
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info("session_created", user_id=str(user_id), session_id=str(session_row.id))
        return session_row

    async def resolve_session(
        self,
        db_session: AsyncSession,
        session_id: UUID,
        now: datetime | None = None,
    ) -> UUID | None:
        """Return the owning user id of a live session, or None.

        Expired sessions and sessions whose user no longer exists are filtered
        in the query and are indistinguishable from missing ones.
        """
        statement = (
            select(Session.user_id)
            .join(User, User.id == Session.user_id)
            .where(
                Session.id == session_id,
                Session.expires_at > (now or datetime.now(UTC)),
            )
        )
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def get_session_expiration(
        self,
        db_session: AsyncSession,
        session_id: UUID,
    ) -> datetime | None:
        """Return the expiry of a session row, if it exists."""
        result = await db_session.execute(
            select(Session.expires_at).where(Session.id == session_id)
        )
        return result.scalar_one_or_none()

    async def destroy_session(self, db_session: AsyncSession, session_id: UUID) -> None:
        """Delete a session; a row that is already gone counts as success."""
        try:
            await db_session.execute(delete(Session).where(Session.id == session_id))
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

    async def destroy_user_sessions(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        except_session_id: UUID | None = None,
    ) -> int:
        """Delete every session of a user, optionally keeping one."""
        statement = delete(Session).where(Session.user_id == user_id)
        if except_session_id is not None:
            statement = statement.where(Session.id != except_session_id)
        try:
            result = await db_session.execute(statement.returning(Session.id))
            revoked = len(result.scalars().all())
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info("user_sessions_revoked", user_id=str(user_id), revoked=revoked)
        return revoked

    async def purge_expired(self, db_session: AsyncSession, now: datetime | None = None) -> int:
        """Delete sessions whose expiry has passed; return how many were removed."""
        statement = (
            delete(Session)
            .where(Session.expires_at <= (now or datetime.now(UTC)))
            .returning(Session.id)
        )
        try:
            result = await db_session.execute(statement)
            purged = len(result.scalars().all())
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        return purged


@lru_cache
def get_session_service() -> SessionService:
    """Create and cache session service."""
    settings = get_settings()
    return SessionService(session_ttl_seconds=settings.session.ttl_seconds)
