"""Time-based one-time codes (RFC 6238) built on pyotp."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pyotp

DIGITS = "0123456789"
DEFAULT_ALGORITHM = "SHA1"
DEFAULT_DIGITS = 6
DEFAULT_PERIOD_SECONDS = 30
SECRET_LENGTH = 32  # base32 characters, 160 bits

_DIGESTS: dict[str, Callable[..., Any]] = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


class TOTPConfigError(ValueError):
    """Raised when a stored or requested TOTP configuration is unusable."""


@dataclass(frozen=True)
class TOTPConfig:
    """Parameters needed to re-derive codes for a shared secret."""

    secret: str
    algorithm: str = DEFAULT_ALGORITHM
    digits: int = DEFAULT_DIGITS
    period: int = DEFAULT_PERIOD_SECONDS
    char_set: str = DIGITS


@dataclass(frozen=True)
class TOTPChallenge:
    """Freshly generated code plus the configuration that validates it."""

    code: str
    config: TOTPConfig


class _CharSetTOTP(pyotp.TOTP):
    """pyotp TOTP whose codes are drawn from an arbitrary character set."""

    def __init__(self, secret: str, char_set: str, **kwargs: Any) -> None:
        super().__init__(secret, **kwargs)
        self.char_set = char_set

    def generate_otp(self, input: int) -> str:  # noqa: A002 - pyotp signature
        if self.char_set == DIGITS:
            return super().generate_otp(input)
        hmac_hash = bytearray(
            hmac.new(self.byte_secret(), self.int_to_bytestring(input), self.digest).digest()
        )
        offset = hmac_hash[-1] & 0x0F
        value = (
            (hmac_hash[offset] & 0x7F) << 24
            | (hmac_hash[offset + 1] & 0xFF) << 16
            | (hmac_hash[offset + 2] & 0xFF) << 8
            | (hmac_hash[offset + 3] & 0xFF)
        )
        base = len(self.char_set)
        characters: list[str] = []
        for _ in range(self.digits):
            value, index = divmod(value, base)
            characters.append(self.char_set[index])
        return "".join(reversed(characters))


def _build_totp(config: TOTPConfig) -> _CharSetTOTP:
    """Instantiate a pyotp generator for the stored configuration."""
    digest = _DIGESTS.get(config.algorithm.upper())
    if digest is None:
        raise TOTPConfigError(f"Unsupported TOTP algorithm: {config.algorithm}.")
    if len(config.char_set) < 2 or len(set(config.char_set)) != len(config.char_set):
        raise TOTPConfigError("TOTP character set must contain at least two unique characters.")
    return _CharSetTOTP(
        config.secret,
        char_set=config.char_set,
        digits=config.digits,
        digest=digest,
        interval=config.period,
    )


def generate_challenge(
    algorithm: str = DEFAULT_ALGORITHM,
    digits: int = DEFAULT_DIGITS,
    period: int = DEFAULT_PERIOD_SECONDS,
    char_set: str = DIGITS,
    now: datetime | None = None,
) -> TOTPChallenge:
    """Create a new random secret and the code valid for the current window."""
    config = TOTPConfig(
        secret=pyotp.random_base32(length=SECRET_LENGTH),
        algorithm=algorithm.upper(),
        digits=digits,
        period=period,
        char_set=char_set,
    )
    code = _build_totp(config).at(now or datetime.now(UTC))
    return TOTPChallenge(code=code, config=config)


def generate_code(config: TOTPConfig, now: datetime | None = None) -> str:
    """Return the code for an existing configuration at the given time."""
    return _build_totp(config).at(now or datetime.now(UTC))


def validate_code(
    code: str,
    config: TOTPConfig,
    now: datetime | None = None,
    valid_window: int = 0,
) -> bool:
    """Return True when the code matches the current (or adjacent) time window.

    Codes with the wrong length or characters outside the configured set are
    rejected before the secret is used.
    """
    candidate = code.strip()
    if len(candidate) != config.digits:
        return False
    if any(character not in config.char_set for character in candidate):
        return False
    try:
        totp = _build_totp(config)
    except TOTPConfigError:
        return False
    for_time = now or datetime.now(UTC)
    return bool(totp.verify(candidate, for_time=for_time, valid_window=valid_window))


def build_otpauth_uri(config: TOTPConfig, account_name: str, issuer: str) -> str:
    """Build the otpauth:// URI consumed by authenticator apps."""
    return _build_totp(config).provisioning_uri(name=account_name, issuer_name=issuer)
