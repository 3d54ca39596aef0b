from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    created_at: datetime
    updated_at: datetime
    name: Optional[str] = None
    role: str = ROLE_USER
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    email_confirmed: bool = False
    email_confirmation_token_hash: Optional[str] = None
    email_confirmation_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        now: datetime,
        *,
        name: Optional[str] = None,
        role: str = ROLE_USER,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
            name=name,
            role=role,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class RefreshSession:
    id: str
    account_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls, account_id: str, token_hash: str, now: datetime, ttl: timedelta
    ) -> "RefreshSession":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class RecoveryCode:
    account_id: str
    code_hash: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    used: bool = False
    used_at: Optional[datetime] = None
