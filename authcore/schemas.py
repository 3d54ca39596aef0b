"""Wire shapes for the auth core.

Response models and the :class:`AuthResult` envelope are what
:class:`~authcore.service.auth.AuthOrchestrator` returns. The request models
are not used inside the package; they are the bodies an HTTP or CLI transport
parses before calling the orchestrator, and they apply the same email
normalization the stores key on.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from authcore.service.errors import AuthErrorKind
from authcore.storage.common import normalize_email
from authcore.storage.models import Account

MAX_EMAIL_LENGTH = 254
MAX_TOKEN_LENGTH = 4096

MAX_LOCAL_PART_LENGTH = 64

_LOCAL_PART = re.compile(r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]+")
_HOST_LABEL = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")


def validate_email_address(value: str) -> str:
    """Normalize (NFKC, strip, case-fold) and syntax-check an address.

    Only the shape is checked; deliverability is proven later by the
    confirmation link.
    """
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    candidate = normalize_email(value)
    if len(candidate) > MAX_EMAIL_LENGTH:
        raise ValueError(f"email must be at most {MAX_EMAIL_LENGTH} characters")
    if candidate.count("@") != 1:
        raise ValueError("email must contain exactly one '@'")
    local, host = candidate.split("@")
    if not local or len(local) > MAX_LOCAL_PART_LENGTH or not _LOCAL_PART.fullmatch(local):
        raise ValueError("email local part is not valid")
    labels = host.split(".")
    if len(labels) < 2 or not all(_HOST_LABEL.fullmatch(label) for label in labels):
        raise ValueError("email domain is not valid")
    return candidate


class WireModel(BaseModel):
    """Base for every transport shape: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


# requests
class LoginRequest(WireModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=1024)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)


class VerifyTwoFactorRequest(WireModel):
    temp_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., max_length=16)


class VerifyRecoveryCodeRequest(WireModel):
    temp_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    recovery_code: str = Field(..., max_length=32)


class RefreshTokenRequest(WireModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(WireModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class EnableTwoFactorRequest(WireModel):
    code: str = Field(..., max_length=16)


class RegisterRequest(WireModel):
    email: str
    password: str = Field(..., max_length=1024)
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email_address(value)


class ConfirmEmailRequest(WireModel):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class ChangePasswordRequest(WireModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class ForgotPasswordRequest(WireModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)


class ResetPasswordRequest(WireModel):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=1024)


# responses
class AccountSummary(WireModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    two_factor_enabled: bool
    email_confirmed: bool

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            two_factor_enabled=account.two_factor_enabled,
            email_confirmed=account.email_confirmed,
        )


class TokenResponse(WireModel):
    access_token: str
    refresh_token: str
    expires_in: int


class LoginResponse(WireModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    requires_two_factor: bool = False
    temp_token: Optional[str] = None
    expires_in: int
    account: Optional[AccountSummary] = None


class TwoFactorSetupResponse(WireModel):
    secret: str
    provisioning_uri: str
    manual_entry_format: str


class EnableTwoFactorResponse(WireModel):
    recovery_codes: List[str]
    message: str = "Two-factor authentication enabled. Store these recovery codes safely."


class RecoveryCodesResponse(WireModel):
    recovery_codes: List[str]
    count: int
    generated_at: datetime


class TwoFactorStatusResponse(WireModel):
    enabled: bool
    configured: bool
    recovery_codes_remaining: int


class RegisterResponse(WireModel):
    account: AccountSummary
    access_token: str
    refresh_token: str
    expires_in: int


class Acknowledgement(WireModel):
    message: str


# envelope
class ErrorBody(WireModel):
    code: int
    kind: AuthErrorKind
    message: str
    retry_after: Optional[int] = None


DataT = TypeVar("DataT")


class AuthResult(WireModel, Generic[DataT]):
    """Envelope every orchestrator operation returns."""

    ok: bool
    data: Optional[DataT] = None
    error: Optional[ErrorBody] = None

    @classmethod
    def success(cls, data: DataT) -> "AuthResult[DataT]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(
        cls,
        kind: AuthErrorKind,
        message: Optional[str] = None,
        *,
        retry_after: Optional[int] = None,
    ) -> "AuthResult[DataT]":
        return cls(
            ok=False,
            error=ErrorBody(
                code=kind.internal_code,
                kind=kind,
                message=message or kind.default_message,
                retry_after=retry_after,
            ),
        )

    @property
    def kind(self) -> Optional[AuthErrorKind]:
        return self.error.kind if self.error else None


__all__ = [
    "Acknowledgement",
    "AccountSummary",
    "AuthResult",
    "ChangePasswordRequest",
    "ConfirmEmailRequest",
    "EnableTwoFactorRequest",
    "EnableTwoFactorResponse",
    "ErrorBody",
    "ForgotPasswordRequest",
    "LoginRequest",
    "LoginResponse",
    "LogoutRequest",
    "RecoveryCodesResponse",
    "RefreshTokenRequest",
    "RegisterRequest",
    "RegisterResponse",
    "ResetPasswordRequest",
    "TokenResponse",
    "TwoFactorSetupResponse",
    "TwoFactorStatusResponse",
    "VerifyRecoveryCodeRequest",
    "VerifyTwoFactorRequest",
    "validate_email_address",
]
