from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.config import PasswordAlgorithm, Settings
from authcore.logging import get_logger
from authcore.service.lockout import LockoutPolicy
from authcore.service.primitives import Clock
from authcore.storage.common import AccountRepository, normalize_email
from authcore.storage.models import Account

logger = get_logger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
# bcrypt only reads the first 72 bytes of its input
_BCRYPT_MAX_BYTES = 72
_MAX_PASSWORD_LENGTH = 1024
_DUMMY_PASSWORD = "authcore-timing-equalizer"


class PasswordHashing:
    """Slow salted hashing with the configured algorithm and cost.

    New hashes use ``settings.password_algorithm``; verification dispatches
    on the stored hash prefix so either algorithm keeps working after a
    switch.
    """

    def __init__(self, settings: Settings) -> None:
        self.algorithm = PasswordAlgorithm(settings.password_algorithm)
        self.bcrypt_rounds = settings.bcrypt_rounds
        self.min_length = settings.password_min_length
        self._argon = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self.hash(_DUMMY_PASSWORD)

    def hash(self, password: str) -> str:
        if self.algorithm is PasswordAlgorithm.BCRYPT:
            digest = bcrypt.hashpw(
                password.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)
            )
            return digest.decode("ascii")
        return self._argon.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        """Constant-time check of ``password`` against ``stored_hash``.

        Malformed or unknown hashes verify as False rather than raising.
        """
        if not stored_hash or password is None:
            return False
        if stored_hash.startswith(_BCRYPT_PREFIXES):
            encoded = password.encode("utf-8")
            if len(encoded) > _BCRYPT_MAX_BYTES:
                return False
            try:
                return bcrypt.checkpw(encoded, stored_hash.encode("ascii"))
            except ValueError:
                logger.warning("password_hash_malformed", scheme="bcrypt")
                return False
        if stored_hash.startswith("$argon2"):
            try:
                return self._argon.verify(stored_hash, password)
            except VerifyMismatchError:
                return False
            except (InvalidHashError, VerificationError):
                logger.warning("password_hash_malformed", scheme="argon2")
                return False
        logger.warning("password_hash_unknown_scheme")
        return False

    def verify_dummy(self, password: str) -> None:
        """Burn the same work as a real verify for unknown accounts."""
        self.verify(self._dummy_hash, password or "")

    def needs_rehash(self, stored_hash: str) -> bool:
        if self.algorithm is PasswordAlgorithm.BCRYPT:
            if not stored_hash.startswith(_BCRYPT_PREFIXES):
                return True
            try:
                rounds = int(stored_hash.split("$")[2])
            except (IndexError, ValueError):
                return True
            return rounds != self.bcrypt_rounds
        if not stored_hash.startswith("$argon2"):
            return True
        try:
            return self._argon.check_needs_rehash(stored_hash)
        except InvalidHashError:
            return True

    def validate_strength(self, password: str) -> Optional[str]:
        """Return a reason the password is unacceptable, or None."""
        if not password or len(password) < self.min_length:
            return f"Password must be at least {self.min_length} characters"
        if len(password) > _MAX_PASSWORD_LENGTH:
            return f"Password must be at most {_MAX_PASSWORD_LENGTH} characters"
        if (
            self.algorithm is PasswordAlgorithm.BCRYPT
            and len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES
        ):
            return f"Password must be at most {_BCRYPT_MAX_BYTES} bytes"
        if not any(ch.isalpha() for ch in password) or not any(
            ch.isdigit() for ch in password
        ):
            return "Password must contain both letters and digits"
        return None


@dataclass
class VerificationOutcome:
    account: Optional[Account]
    ok: bool
    locked: bool = False
    retry_after: int = 0


class CredentialVerifier:
    """Email and password check with lockout bookkeeping."""

    def __init__(
        self,
        store: AccountRepository,
        hashing: PasswordHashing,
        lockout: LockoutPolicy,
        clock: Clock,
    ) -> None:
        self.store = store
        self.hashing = hashing
        self.lockout = lockout
        self.clock = clock

    def hash_password(self, plain: str) -> str:
        return self.hashing.hash(plain)

    def needs_rehash(self, stored_hash: str) -> bool:
        return self.hashing.needs_rehash(stored_hash)

    def verify(self, email: str, password: str) -> VerificationOutcome:
        now = self.clock.now()
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            self.hashing.verify_dummy(password)
            logger.info("login_unknown_account")
            return VerificationOutcome(account=None, ok=False)

        if self.lockout.is_locked(account, now):
            logger.info("login_rejected_locked", account_id=account.id)
            return VerificationOutcome(
                account=account,
                ok=False,
                locked=True,
                retry_after=self.lockout.retry_after(account, now),
            )

        if not self.hashing.verify(account.password_hash, password):
            updated = self.lockout.record_failure(account.id, now) or account
            return VerificationOutcome(account=updated, ok=False)

        return VerificationOutcome(account=account, ok=True)
