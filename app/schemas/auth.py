"""Request and response schemas for login, signup, and verification routes."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class HoneypotForm(BaseModel):
    """Public form carrying a hidden field that real users leave blank."""

    model_config = ConfigDict(populate_by_name=True)

    honeypot: str | None = Field(default=None, alias="name__confirm", max_length=200)


class CSRFTokenResponse(BaseModel):
    csrf_token: str


class LoginRequest(HoneypotForm):
    """Password login payload."""

    username: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=6, max_length=100)
    remember: bool = False
    redirect_to: str | None = Field(default=None, alias="redirectTo", max_length=2048)

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        return value.lower()


class SignupRequest(HoneypotForm):
    """Onboarding start payload."""

    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)
    redirect_to: str | None = Field(default=None, alias="redirectTo", max_length=2048)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()


class VerifyRequest(BaseModel):
    """Code submission for any verification type."""

    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1, max_length=32)
    type: Literal["onboarding", "reset-password", "change-email", "2fa"]
    target: str = Field(min_length=1, max_length=320)
    redirect_to: str | None = Field(default=None, alias="redirectTo", max_length=2048)


class VerifyPageResponse(BaseModel):
    """Values the verify form is prefilled with."""

    type: str | None = None
    target: str | None = None
    redirect_to: str | None = None


class OnboardingRequest(HoneypotForm):
    """Account details for a verified onboarding email."""

    username: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    name: str = Field(min_length=3, max_length=40)
    password: str = Field(min_length=6, max_length=100)
    confirm_password: str = Field(alias="confirmPassword", min_length=6, max_length=100)
    agree_to_terms_of_service_and_privacy_policy: bool = Field(
        alias="agreeToTermsOfServiceAndPrivacyPolicy"
    )
    remember: bool = False
    redirect_to: str | None = Field(default=None, alias="redirectTo", max_length=2048)

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def check_passwords_and_terms(self) -> OnboardingRequest:
        if self.password != self.confirm_password:
            raise ValueError("The passwords must match")
        if not self.agree_to_terms_of_service_and_privacy_policy:
            raise ValueError("You must agree to the terms of service and privacy policy")
        return self


class OnboardingResponse(BaseModel):
    email: str


class ProviderOnboardingRequest(BaseModel):
    """Account details for a new user arriving from an external provider."""

    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    name: str = Field(min_length=3, max_length=40)
    agree_to_terms_of_service_and_privacy_policy: bool = Field(
        alias="agreeToTermsOfServiceAndPrivacyPolicy"
    )
    remember: bool = False
    redirect_to: str | None = Field(default=None, alias="redirectTo", max_length=2048)

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def check_terms(self) -> ProviderOnboardingRequest:
        if not self.agree_to_terms_of_service_and_privacy_policy:
            raise ValueError("You must agree to the terms of service and privacy policy")
        return self


class ProviderOnboardingResponse(BaseModel):
    email: str
    provider_name: str
    username: str | None = None
    name: str | None = None
    image_url: str | None = None


class ForgotPasswordRequest(HoneypotForm):
    username_or_email: str = Field(alias="usernameOrEmail", min_length=3, max_length=100)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: str = Field(min_length=6, max_length=100)
    confirm_password: str = Field(alias="confirmPassword", min_length=6, max_length=100)

    @model_validator(mode="after")
    def check_passwords_match(self) -> ResetPasswordRequest:
        if self.password != self.confirm_password:
            raise ValueError("The passwords must match")
        return self


class ResetPasswordResponse(BaseModel):
    username: str


class ProviderLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    redirect_to: str | None = Field(default=None, alias="redirectTo", max_length=2048)
