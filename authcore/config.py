from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class PasswordAlgorithm(str, Enum):
    """Password hashing algorithms the credential verifier can produce."""

    ARGON2ID = "argon2id"
    BCRYPT = "bcrypt"


def env_field(default: Any, env: str, **kwargs):
    """Declare a settings field together with the variable that overrides it."""
    schema_extra = dict(kwargs.pop("json_schema_extra", None) or {})
    schema_extra["env"] = env
    return Field(default, json_schema_extra=schema_extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value if str(part).strip()]


class Settings(BaseModel):
    """Runtime settings for the authentication core.

    One instance is built at startup and handed to every component's
    constructor; no component reads the environment on its own.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow ephemeral secrets and other deterministic testing behaviors.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_previous_secrets: list[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Comma separated retired signing secrets still accepted for verification",
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    # Two-factor handshake token
    temp_token_secret: str | None = env_field(
        None, "TEMP_TOKEN_SECRET", validate_default=True
    )
    temp_token_previous_secrets: list[str] = env_field(
        [], "TEMP_TOKEN_PREVIOUS_SECRETS"
    )
    temp_token_ttl_minutes: int = env_field(5, "TEMP_TOKEN_TTL_MINUTES")
    temp_token_clock_skew_seconds: int = env_field(
        0,
        "TEMP_TOKEN_CLOCK_SKEW_SECONDS",
        description="How far in the future a temp token's issue time may be before it is rejected",
    )

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")

    # TOTP
    totp_issuer: str = env_field("Authcore", "TOTP_ISSUER")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_period_seconds: int = env_field(30, "TOTP_PERIOD_SECONDS")
    totp_skew_steps: int = env_field(1, "TOTP_SKEW_STEPS")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")

    # Password hashing
    password_algorithm: PasswordAlgorithm = env_field(
        PasswordAlgorithm.ARGON2ID, "PASSWORD_ALGORITHM"
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    bcrypt_rounds: int = env_field(12, "BCRYPT_ROUNDS")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    # Account lifecycle tokens
    email_confirmation_ttl_hours: int = env_field(24, "EMAIL_CONFIRMATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map each field to the environment variable it is read from."""
        names: dict[str, str] = {}
        for field_name, info in cls.model_fields.items():
            schema_extra = info.json_schema_extra
            declared = schema_extra.get("env") if isinstance(schema_extra, dict) else None
            names[field_name] = str(declared or field_name.upper())
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment over an optional dotenv file."""
        sources = [os.environ, dotenv_values(env_file)]
        values: dict[str, Any] = {}
        for field_name, env_name in cls.env_names().items():
            for source in sources:
                raw = source.get(env_name)
                if raw is not None:
                    values[field_name] = raw
                    break
        return cls(**values)

    @field_validator("jwt_previous_secrets", "temp_token_previous_secrets", mode="before")
    @classmethod
    def _parse_secret_list(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "temp_token_ttl_minutes",
        "lockout_threshold",
        "lockout_minutes",
        "totp_period_seconds",
        "recovery_code_count",
        "email_confirmation_ttl_hours",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if value not in (6, 7, 8):
            raise ValueError("totp_digits must be 6, 7 or 8")
        return value

    @field_validator("totp_skew_steps", "temp_token_clock_skew_seconds")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", "temp_token_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        test_mode = str(info.data.get("test_mode", "")).lower() in {"1", "true", "yes", "on"}
        if not test_mode:
            raise ValueError(
                f"{info.field_name} is required; set {info.field_name.upper()} in the environment"
            )
        logger.warning(
            "ephemeral_secret_generated",
            setting=info.field_name,
            message="Tokens will not survive a restart",
        )
        return secrets.token_urlsafe(48)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def temp_token_ttl_seconds(self) -> int:
        return self.temp_token_ttl_minutes * 60


_cached: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use."""
    global _cached
    if _cached is None:
        _cached = Settings.from_env()
    return _cached


def reset_settings_cache() -> None:
    global _cached
    _cached = None
