from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    """Stable failure kinds returned by the authentication core.

    Each kind carries an HTTP status hint for a transport layer and the
    numeric internal code clients already key on. Several kinds share an
    internal code so a client cannot tell which half of a credential pair
    was wrong.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    TWO_FACTOR_SETUP_REQUIRED = "two_factor_setup_required"
    INVALID_TWO_FACTOR_CODE = "invalid_two_factor_code"
    TEMP_TOKEN_INVALID = "temp_token_invalid"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    RECOVERY_CODE_INVALID = "recovery_code_invalid"
    TWO_FACTOR_ALREADY_ENABLED = "two_factor_already_enabled"
    TWO_FACTOR_NOT_ENABLED = "two_factor_not_enabled"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    EMAIL_ALREADY_REGISTERED = "email_already_registered"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_TOKEN = "invalid_token"
    WEAK_PASSWORD = "weak_password"
    INVALID_REQUEST = "invalid_request"

    @property
    def status_code(self) -> int:
        return _KIND_META[self][0]

    @property
    def internal_code(self) -> int:
        return _KIND_META[self][1]

    @property
    def default_message(self) -> str:
        return _KIND_META[self][2]


_KIND_META: dict[AuthErrorKind, tuple[int, int, str]] = {
    AuthErrorKind.INVALID_CREDENTIALS: (401, 4001, "Invalid email or password"),
    AuthErrorKind.ACCOUNT_LOCKED: (
        423,
        4029,
        "Account is temporarily locked due to repeated failed attempts",
    ),
    AuthErrorKind.TWO_FACTOR_SETUP_REQUIRED: (
        400,
        4005,
        "Two-factor authentication has not been set up",
    ),
    AuthErrorKind.INVALID_TWO_FACTOR_CODE: (401, 4001, "Invalid two-factor code"),
    AuthErrorKind.TEMP_TOKEN_INVALID: (
        401,
        4001,
        "Two-factor session expired or invalid; sign in again",
    ),
    AuthErrorKind.REFRESH_TOKEN_INVALID: (401, 4001, "Invalid or expired refresh token"),
    AuthErrorKind.RECOVERY_CODE_INVALID: (401, 4001, "Invalid recovery code"),
    AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED: (
        409,
        4006,
        "Two-factor authentication is already enabled",
    ),
    AuthErrorKind.TWO_FACTOR_NOT_ENABLED: (
        400,
        4005,
        "Two-factor authentication is not enabled",
    ),
    AuthErrorKind.STORAGE_UNAVAILABLE: (
        503,
        5000,
        "Service temporarily unavailable; try again later",
    ),
    AuthErrorKind.EMAIL_ALREADY_REGISTERED: (409, 4003, "Email is already registered"),
    AuthErrorKind.ACCOUNT_NOT_FOUND: (404, 4004, "Account not found"),
    AuthErrorKind.INVALID_TOKEN: (400, 4001, "Invalid or expired token"),
    AuthErrorKind.WEAK_PASSWORD: (400, 4002, "Password does not meet requirements"),
    AuthErrorKind.INVALID_REQUEST: (400, 4000, "Request is malformed"),
}


class AuthFailure(Exception):
    """Expected authentication outcome raised inside the orchestrator.

    Never escapes the public API: the orchestrator boundary converts it into
    a failed :class:`~authcore.schemas.AuthResult`.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        message: Optional[str] = None,
        *,
        retry_after: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.message = message or kind.default_message
        self.retry_after = retry_after
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return self.kind.status_code


__all__ = ["AuthErrorKind", "AuthFailure"]
