"""Storage contract and helpers shared between memory and postgres backends."""

from __future__ import annotations

import unicodedata
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.storage.errors import StorageUnavailable
from authcore.storage.models import Account, RecoveryCode, RefreshSession

logger = get_logger(__name__)

# Bound on optimistic concurrency re-reads before giving up
MAX_CAS_ATTEMPTS = 8


class AccountRepository(Protocol):
    # accounts
    def create_account(
        self, account: Account, *, promote_if_first: bool = False
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_confirmation_token(
        self, token_hash: str
    ) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]: ...

    def update_account(
        self, account: Account, expected_version: int
    ) -> Optional[Account]: ...

    # refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_refresh_session(self, token_hash: str) -> Optional[RefreshSession]: ...

    def rotate_refresh_session(
        self, old_token_hash: str, successor: RefreshSession, now: datetime
    ) -> Optional[RefreshSession]: ...

    def revoke_refresh_session(self, token_hash: str, now: datetime) -> bool: ...

    def revoke_account_sessions(self, account_id: str, now: datetime) -> int: ...

    # recovery codes
    def replace_recovery_codes(
        self, account_id: str, codes: List[RecoveryCode]
    ) -> None: ...

    def list_unused_recovery_codes(self, account_id: str) -> List[RecoveryCode]: ...

    def mark_recovery_code_used(self, code_id: str, used_at: datetime) -> bool: ...

    def delete_recovery_codes(self, account_id: str) -> int: ...


def normalize_email(email: str) -> str:
    """NFKC, strip and case-fold; every lookup and insert keys on this form."""
    return unicodedata.normalize("NFKC", email or "").strip().casefold()


def update_account_with_retry(
    store: AccountRepository,
    account_id: str,
    mutate: Callable[[Account], Optional[Account]],
    *,
    attempts: int = MAX_CAS_ATTEMPTS,
) -> Optional[Tuple[Account, Account]]:
    """Apply ``mutate`` to the latest row using compare-and-swap on ``version``.

    ``mutate`` receives a copy of the current row and returns the desired row,
    or ``None`` when no write is needed. On a version conflict the row is
    re-read and ``mutate`` runs again against the fresh state.

    Returns ``(before, after)`` for the attempt that won, or ``None`` when the
    account does not exist. Raises :class:`StorageUnavailable` once
    ``attempts`` conflicts in a row have been seen.
    """

    for attempt in range(1, attempts + 1):
        current = store.get_account(account_id)
        if current is None:
            return None
        desired = mutate(replace(current))
        if desired is None:
            return current, current
        updated = store.update_account(desired, expected_version=current.version)
        if updated is not None:
            return current, updated
        logger.debug("account_version_conflict", account_id=account_id, attempt=attempt)
    logger.error("account_update_contention", account_id=account_id, attempts=attempts)
    raise StorageUnavailable(
        "account update lost too many concurrent races", {"account_id": account_id}
    )
