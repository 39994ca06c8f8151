"""External identity linking between provider accounts and local users."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.oauth import ProviderProfile
from app.models.connection import Connection
from app.models.user import Password, User

logger = structlog.get_logger(__name__)


class ConnectionServiceError(Exception):
    """Raised when connection management operations fail."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


class LinkDecision(enum.Enum):
    """Outcome of matching a provider profile against local accounts."""

    ALREADY_CONNECTED = "already_connected"
    CONNECTED_TO_ANOTHER = "connected_to_another"
    LOGIN_EXISTING = "login_existing"
    CONNECTED_CURRENT_USER = "connected_current_user"
    CONNECTED_BY_EMAIL = "connected_by_email"
    ONBOARD = "onboard"


@dataclass(frozen=True)
class LinkResult:
    decision: LinkDecision
    user_id: UUID | None = None


class ConnectionService:
    """Service for resolving, creating, listing, and removing connections."""

    async def get_connection_owner(
        self,
        db_session: AsyncSession,
        provider_name: str,
        provider_id: str,
    ) -> UUID | None:
        """Return the user id linked to an external identity, if any."""
        statement = select(Connection.user_id).where(
            Connection.provider_name == provider_name,
            Connection.provider_id == provider_id,
        )
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def resolve_link(
        self,
        db_session: AsyncSession,
        provider_name: str,
        profile: ProviderProfile,
        current_user_id: UUID | None,
    ) -> LinkResult:
        """Apply the first matching linking rule, creating connections where it says so."""
        owner_id = await self.get_connection_owner(
            db_session, provider_name=provider_name, provider_id=profile.id
        )
        if owner_id is not None and current_user_id is not None:
            if owner_id == current_user_id:
                return LinkResult(LinkDecision.ALREADY_CONNECTED, owner_id)
            return LinkResult(LinkDecision.CONNECTED_TO_ANOTHER, owner_id)

        if current_user_id is not None:
            await self.create_connection(
                db_session,
                provider_name=provider_name,
                provider_id=profile.id,
                user_id=current_user_id,
            )
            return LinkResult(LinkDecision.CONNECTED_CURRENT_USER, current_user_id)

        if owner_id is not None:
            return LinkResult(LinkDecision.LOGIN_EXISTING, owner_id)

        result = await db_session.execute(
            select(User.id).where(func.lower(User.email) == profile.email.lower())
        )
        matched_user_id = result.scalar_one_or_none()
        if matched_user_id is not None:
            await self.create_connection(
                db_session,
                provider_name=provider_name,
                provider_id=profile.id,
                user_id=matched_user_id,
            )
            return LinkResult(LinkDecision.CONNECTED_BY_EMAIL, matched_user_id)

        return LinkResult(LinkDecision.ONBOARD)

    async def create_connection(
        self,
        db_session: AsyncSession,
        provider_name: str,
        provider_id: str,
        user_id: UUID,
    ) -> Connection:
        """Link an external identity to a user; the identity must be unlinked."""
        connection = Connection(
            provider_name=provider_name, provider_id=provider_id, user_id=user_id
        )
        try:
            db_session.add(connection)
            await db_session.flush()
        except IntegrityError as exc:
            await db_session.rollback()
            raise ConnectionServiceError(
                "This account is already connected.", "connection_exists", 409
            ) from exc
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info(
            "connection_created",
            provider=provider_name,
            user_id=str(user_id),
            connection_id=str(connection.id),
        )
        return connection

    async def list_connections(self, db_session: AsyncSession, user_id: UUID) -> list[Connection]:
        statement = (
            select(Connection)
            .where(Connection.user_id == user_id)
            .order_by(Connection.created_at.asc())
        )
        result = await db_session.execute(statement)
        return list(result.scalars().all())

    async def delete_connection(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        connection_id: UUID,
    ) -> None:
        """Delete one of the user's connections if another login method remains."""
        connections = await self.list_connections(db_session, user_id=user_id)
        if not any(connection.id == connection_id for connection in connections):
            raise ConnectionServiceError("Connection not found.", "invalid_connection", 404)

        password_result = await db_session.execute(
            select(func.count()).select_from(Password).where(Password.user_id == user_id)
        )
        has_password = int(password_result.scalar_one()) > 0
        if not has_password and len(connections) <= 1:
            raise ConnectionServiceError(
                "You cannot delete your last connection unless you have a password.",
                "last_login_method",
                409,
            )
        try:
            await db_session.execute(
                delete(Connection).where(
                    Connection.id == connection_id, Connection.user_id == user_id
                )
            )
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info("connection_deleted", user_id=str(user_id), connection_id=str(connection_id))


@lru_cache
def get_connection_service() -> ConnectionService:
    """Create and cache connection service."""
    return ConnectionService()
