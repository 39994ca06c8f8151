"""User lookup, credential, and account creation services."""

from __future__ import annotations

import asyncio
import re
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.passwords import PasswordHasher, get_password_hasher
from app.models.user import Password, Role, User, user_roles

DEFAULT_ROLE = "user"
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
_USERNAME_INVALID_CHARACTERS = re.compile(r"[^a-zA-Z0-9_]")

logger = structlog.get_logger(__name__)


class UserServiceError(Exception):
    """Raised when user management operations fail validation."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code


def generate_username(raw_username: str | None) -> str | None:
    """Derive a valid username from a provider handle.

    Characters outside ``[a-zA-Z0-9_]`` become ``_``; the result is lower-cased,
    truncated to 20 characters, and right-padded with ``_`` to 3 characters.
    """
    if raw_username is None:
        return None
    cleaned = _USERNAME_INVALID_CHARACTERS.sub("_", raw_username).lower()
    return cleaned[:USERNAME_MAX_LENGTH].ljust(USERNAME_MIN_LENGTH, "_")


class UserService:
    """Service responsible for user retrieval and password management."""

    def __init__(self, password_hasher: PasswordHasher) -> None:
        self._password_hasher = password_hasher

    async def get_user_by_id(self, db_session: AsyncSession, user_id: UUID) -> User | None:
        result = await db_session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_email(self, db_session: AsyncSession, email: str) -> User | None:
        """Fetch a user by case-insensitive email."""
        statement = select(User).where(func.lower(User.email) == email.strip().lower())
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def get_user_by_username(self, db_session: AsyncSession, username: str) -> User | None:
        """Fetch a user by case-insensitive username."""
        statement = select(User).where(func.lower(User.username) == username.strip().lower())
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def get_user_by_username_or_email(
        self,
        db_session: AsyncSession,
        identifier: str,
    ) -> User | None:
        """Fetch a user matching either the username or the email."""
        normalized = identifier.strip().lower()
        statement = select(User).where(
            (func.lower(User.username) == normalized) | (func.lower(User.email) == normalized)
        )
        result = await db_session.execute(statement)
        return result.scalars().first()

    async def has_password(self, db_session: AsyncSession, user_id: UUID) -> bool:
        result = await db_session.execute(
            select(func.count()).select_from(Password).where(Password.user_id == user_id)
        )
        return int(result.scalar_one()) > 0

    async def authenticate(
        self,
        db_session: AsyncSession,
        username: str,
        password: str,
    ) -> User | None:
        """Authenticate username/password credentials for password login."""
        statement = (
            select(User, Password.hash)
            .outerjoin(Password, Password.user_id == User.id)
            .where(func.lower(User.username) == username.strip().lower())
        )
        row = (await db_session.execute(statement)).first()
        if row is None or row[1] is None:
            await asyncio.to_thread(self._password_hasher.dummy_verify)
            return None
        user, password_hash = row
        matched = await asyncio.to_thread(self._password_hasher.verify, password, password_hash)
        if not matched:
            return None
        return user

    async def create_user(
        self,
        db_session: AsyncSession,
        email: str,
        username: str,
        name: str | None,
        password: str | None = None,
    ) -> User:
        """Create a user with the default role and an optional password."""
        password_hash = (
            await asyncio.to_thread(self._password_hasher.hash, password)
            if password is not None
            else None
        )
        user = User(email=email.strip().lower(), username=username.strip().lower(), name=name)
        try:
            db_session.add(user)
            await db_session.flush()
            if password_hash is not None:
                db_session.add(Password(user_id=user.id, hash=password_hash))
            role_id = await self._ensure_role(db_session=db_session, name=DEFAULT_ROLE)
            await db_session.execute(
                user_roles.insert().values(user_id=user.id, role_id=role_id)
            )
            await db_session.flush()
        except IntegrityError as exc:
            await db_session.rollback()
            raise UserServiceError(
                "A user already exists with this email or username.", "user_exists", 409
            ) from exc
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info("user_created", user_id=str(user.id))
        return user

    async def set_password(self, db_session: AsyncSession, user_id: UUID, password: str) -> None:
        """Create or replace the password credential for a user."""
        password_hash = await asyncio.to_thread(self._password_hasher.hash, password)
        statement = (
            insert(Password)
            .values(user_id=user_id, hash=password_hash)
            .on_conflict_do_update(index_elements=[Password.user_id], set_={"hash": password_hash})
        )
        try:
            await db_session.execute(statement)
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

    async def update_email(self, db_session: AsyncSession, user_id: UUID, email: str) -> User:
        """Replace a user's email address."""
        user = await db_session.get(User, user_id, with_for_update=True)
        if user is None:
            raise UserServiceError("User not found.", "invalid_user", 404)
        user.email = email.strip().lower()
        try:
            await db_session.flush()
        except IntegrityError as exc:
            await db_session.rollback()
            raise UserServiceError(
                "A user already exists with this email.", "user_exists", 409
            ) from exc
        await db_session.commit()
        return user

    async def _ensure_role(self, db_session: AsyncSession, name: str) -> UUID:
        """Return the id of a role, creating it on first use."""
        await db_session.execute(
            insert(Role).values(name=name, description="").on_conflict_do_nothing(
                index_elements=[Role.name]
            )
        )
        result = await db_session.execute(select(Role.id).where(Role.name == name))
        return result.scalar_one()


@lru_cache
def get_user_service() -> UserService:
    """Create and cache user service."""
    return UserService(password_hasher=get_password_hasher())
