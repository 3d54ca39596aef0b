from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from authcore.logging import get_logger
from authcore.service.passwords import PasswordHashing
from authcore.service.primitives import SecureRandom
from authcore.storage.common import AccountRepository
from authcore.storage.models import RecoveryCode

logger = get_logger(__name__)

CODE_DIGITS = 8
DEFAULT_CODE_COUNT = 10


def normalize_recovery_code(candidate: str) -> Optional[str]:
    """Strip separators; return the bare digits or None when malformed."""
    if not isinstance(candidate, str):
        return None
    cleaned = "".join(candidate.split()).replace("-", "")
    if len(cleaned) != CODE_DIGITS or not cleaned.isascii() or not cleaned.isdigit():
        return None
    return cleaned


class RecoveryCodeVault:
    """Issues and consumes single-use backup codes.

    Only password-grade hashes are stored. Plaintext codes leave this class
    once, as the return value of :meth:`generate`.
    """

    def __init__(
        self,
        store: AccountRepository,
        hashing: PasswordHashing,
        random: SecureRandom,
        *,
        default_count: int = DEFAULT_CODE_COUNT,
    ) -> None:
        self.store = store
        self.hashing = hashing
        self.random = random
        self.default_count = default_count

    def _new_code(self) -> str:
        digits = "".join(str(self.random.randbelow(10)) for _ in range(CODE_DIGITS))
        return f"{digits[:4]}-{digits[4:]}"

    def generate(
        self, account_id: str, now: datetime, count: Optional[int] = None
    ) -> List[str]:
        count = count or self.default_count
        plaintext: List[str] = []
        seen: set[str] = set()
        while len(plaintext) < count:
            code = self._new_code()
            if code in seen:
                continue
            seen.add(code)
            plaintext.append(code)
        records = [
            RecoveryCode(
                account_id=account_id,
                code_hash=self.hashing.hash(code.replace("-", "")),
                created_at=now,
            )
            for code in plaintext
        ]
        self.store.replace_recovery_codes(account_id, records)
        logger.info("recovery_codes_generated", account_id=account_id, count=count)
        return plaintext

    def consume(self, account_id: str, candidate: str, now: datetime) -> bool:
        normalized = normalize_recovery_code(candidate)
        if normalized is None:
            return False
        for record in self.store.list_unused_recovery_codes(account_id):
            if not self.hashing.verify(record.code_hash, normalized):
                continue
            if self.store.mark_recovery_code_used(record.id, now):
                logger.info(
                    "recovery_code_consumed",
                    account_id=account_id,
                    remaining=self.remaining(account_id),
                )
                return True
            # a concurrent request consumed this code first
            logger.info("recovery_code_race_lost", account_id=account_id)
            return False
        return False

    def remaining(self, account_id: str) -> int:
        return len(self.store.list_unused_recovery_codes(account_id))

    def revoke_all(self, account_id: str) -> int:
        removed = self.store.delete_recovery_codes(account_id)
        logger.info("recovery_codes_revoked", account_id=account_id, count=removed)
        return removed
