"""Request and response schemas for profile settings routes."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.schemas.auth import EMAIL_PATTERN


class ProfileResponse(BaseModel):
    """Current user profile."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    username: str
    name: str | None
    has_password: bool
    is_two_factor_enabled: bool


class CreatePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_password: str = Field(alias="newPassword", min_length=6, max_length=100)
    confirm_new_password: str = Field(alias="confirmNewPassword", min_length=6, max_length=100)

    @model_validator(mode="after")
    def check_passwords_match(self) -> CreatePasswordRequest:
        if self.new_password != self.confirm_new_password:
            raise ValueError("The passwords must match")
        return self


class ChangeEmailRequest(BaseModel):
    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()


class TwoFactorStatusResponse(BaseModel):
    is_two_factor_enabled: bool


class TwoFactorEnrollmentResponse(BaseModel):
    """Pending enrollment details rendered as a QR code by the client."""

    otp_uri: str


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(min_length=6, max_length=6)


class ConnectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_name: str
    provider_id: str
    created_at: datetime


class ConnectionListResponse(BaseModel):
    connections: list[ConnectionResponse]
    can_delete_connections: bool
