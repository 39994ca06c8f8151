"""Persistence and validation of one-time code challenges."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Final, Literal
from uuid import UUID

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core import totp
from app.core.outcomes import with_query
from app.models.verification import Verification

VerificationType = Literal["onboarding", "reset-password", "change-email", "2fa", "2fa-verify"]

ONBOARDING: Final = "onboarding"
RESET_PASSWORD: Final = "reset-password"
CHANGE_EMAIL: Final = "change-email"
TWO_FACTOR: Final = "2fa"
TWO_FACTOR_VERIFY: Final = "2fa-verify"
VERIFIABLE_TYPES: Final = (ONBOARDING, RESET_PASSWORD, CHANGE_EMAIL, TWO_FACTOR)

# Authenticator apps drift; emailed codes already live for a whole period.
_SKEW_WINDOWS: dict[str, int] = {TWO_FACTOR: 1, TWO_FACTOR_VERIFY: 1}

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PreparedVerification:
    """Issued challenge: the code and the links that submit it."""

    otp: str
    redirect_to: str
    verify_url: str


class VerificationService:
    """Store, look up, and consume verification records keyed by (target, type)."""

    def __init__(
        self,
        public_base_url: str,
        email_code_period_seconds: int,
        two_factor_enrollment_ttl_seconds: int,
        issuer: str,
    ) -> None:
        self._public_base_url = public_base_url.rstrip("/")
        self._email_code_period_seconds = email_code_period_seconds
        self._two_factor_enrollment_ttl_seconds = two_factor_enrollment_ttl_seconds
        self._issuer = issuer

    async def upsert(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
        config: totp.TOTPConfig,
        expires_at: datetime | None,
    ) -> None:
        """Create or replace the record for (target, type)."""
        values = {
            "secret": config.secret,
            "algorithm": config.algorithm,
            "digits": config.digits,
            "period": config.period,
            "char_set": config.char_set,
            "expires_at": expires_at,
        }
        statement = (
            insert(Verification)
            .values(target=target, type=type, **values)
            .on_conflict_do_update(
                index_elements=[Verification.target, Verification.type],
                set_={**values, "created_at": func.now()},
            )
        )
        try:
            await db_session.execute(statement)
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

    async def find(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
        now: datetime | None = None,
    ) -> Verification | None:
        """Return the unexpired record for (target, type); NULL expiry never expires."""
        statement = select(Verification).where(
            Verification.target == target,
            Verification.type == type,
            or_(
                Verification.expires_at.is_(None),
                Verification.expires_at > (now or datetime.now(UTC)),
            ),
        )
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    async def delete(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
    ) -> bool:
        """Delete the record for (target, type); return whether a row was removed."""
        statement = (
            delete(Verification)
            .where(Verification.target == target, Verification.type == type)
            .returning(Verification.id)
        )
        try:
            result = await db_session.execute(statement)
            deleted = result.scalar_one_or_none() is not None
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        return deleted

    async def prepare_verification(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
        period: int | None = None,
        redirect_to: str | None = None,
    ) -> PreparedVerification:
        """Issue a new emailed challenge and build the links that verify it."""
        period_seconds = period or self._email_code_period_seconds
        now = datetime.now(UTC)
        challenge = totp.generate_challenge(algorithm="SHA256", period=period_seconds, now=now)
        await self.upsert(
            db_session,
            target=target,
            type=type,
            config=challenge.config,
            expires_at=now + timedelta(seconds=period_seconds),
        )
        verify_path = with_query("/verify", type=type, target=target, redirectTo=redirect_to)
        verify_url = with_query(
            f"{self._public_base_url}/verify",
            type=type,
            target=target,
            redirectTo=redirect_to,
            code=challenge.code,
        )
        logger.info("verification_prepared", type=type)
        return PreparedVerification(
            otp=challenge.code, redirect_to=verify_path, verify_url=verify_url
        )

    async def is_code_valid(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
        code: str,
        now: datetime | None = None,
    ) -> bool:
        """Return True when an unexpired record exists and the code matches it."""
        record = await self.find(db_session, target=target, type=type, now=now)
        if record is None:
            return False
        return totp.validate_code(
            code,
            self._config_from_record(record),
            now=now,
            valid_window=_SKEW_WINDOWS.get(type, 0),
        )

    async def consume_code(
        self,
        db_session: AsyncSession,
        target: str,
        type: VerificationType,  # noqa: A002
        code: str,
        now: datetime | None = None,
    ) -> bool:
        """Validate a code and delete its record; only one caller can win the delete."""
        record = await self.find(db_session, target=target, type=type, now=now)
        if record is None:
            return False
        if not totp.validate_code(
            code,
            self._config_from_record(record),
            now=now,
            valid_window=_SKEW_WINDOWS.get(type, 0),
        ):
            return False
        statement = (
            delete(Verification)
            .where(Verification.id == record.id, Verification.secret == record.secret)
            .returning(Verification.id)
        )
        try:
            result = await db_session.execute(statement)
            consumed = result.scalar_one_or_none() is not None
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        if not consumed:
            logger.warning("verification_already_consumed", type=type)
        return consumed

    async def start_two_factor_enrollment(
        self,
        db_session: AsyncSession,
        user_id: UUID,
    ) -> totp.TOTPConfig:
        """Create a pending authenticator secret awaiting its first code."""
        challenge = totp.generate_challenge()
        await self.upsert(
            db_session,
            target=str(user_id),
            type=TWO_FACTOR_VERIFY,
            config=challenge.config,
            expires_at=datetime.now(UTC)
            + timedelta(seconds=self._two_factor_enrollment_ttl_seconds),
        )
        return challenge.config

    async def get_two_factor_enrollment_uri(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        account_name: str,
    ) -> str | None:
        """Return the otpauth URI for a pending enrollment, if one is active."""
        record = await self.find(db_session, target=str(user_id), type=TWO_FACTOR_VERIFY)
        if record is None:
            return None
        return totp.build_otpauth_uri(
            self._config_from_record(record), account_name=account_name, issuer=self._issuer
        )

    async def complete_two_factor_enrollment(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        code: str,
    ) -> bool:
        """Promote a pending enrollment to a persistent 2FA record when the code matches."""
        target = str(user_id)
        is_valid = await self.is_code_valid(
            db_session, target=target, type=TWO_FACTOR_VERIFY, code=code
        )
        if not is_valid:
            return False
        try:
            await db_session.execute(
                delete(Verification).where(
                    Verification.target == target, Verification.type == TWO_FACTOR
                )
            )
            result = await db_session.execute(
                update(Verification)
                .where(Verification.target == target, Verification.type == TWO_FACTOR_VERIFY)
                .values(type=TWO_FACTOR, expires_at=None)
                .returning(Verification.id)
            )
            promoted = result.scalar_one_or_none() is not None
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        if promoted:
            logger.info("two_factor_enabled", user_id=target)
        return promoted

    async def disable_two_factor(self, db_session: AsyncSession, user_id: UUID) -> bool:
        disabled = await self.delete(db_session, target=str(user_id), type=TWO_FACTOR)
        if disabled:
            logger.info("two_factor_disabled", user_id=str(user_id))
        return disabled

    async def purge_expired(self, db_session: AsyncSession, now: datetime | None = None) -> int:
        """Delete records past their expiry; persistent records are never purged."""
        statement = (
            delete(Verification)
            .where(
                Verification.expires_at.is_not(None),
                Verification.expires_at <= (now or datetime.now(UTC)),
            )
            .returning(Verification.id)
        )
        try:
            result = await db_session.execute(statement)
            purged = len(result.scalars().all())
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        return purged

    async def has_two_factor(self, db_session: AsyncSession, user_id: UUID) -> bool:
        record = await self.find(db_session, target=str(user_id), type=TWO_FACTOR)
        return record is not None

    @staticmethod
    def _config_from_record(record: Verification) -> totp.TOTPConfig:
        return totp.TOTPConfig(
            secret=record.secret,
            algorithm=record.algorithm,
            digits=record.digits,
            period=record.period,
            char_set=record.char_set,
        )


@lru_cache
def get_verification_service() -> VerificationService:
    """Create and cache verification service."""
    settings = get_settings()
    return VerificationService(
        public_base_url=str(settings.app.public_base_url),
        email_code_period_seconds=settings.verification.email_code_period_seconds,
        two_factor_enrollment_ttl_seconds=settings.verification.two_factor_enrollment_ttl_seconds,
        issuer=settings.verification.issuer,
    )
