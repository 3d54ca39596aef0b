from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.notifications import NotificationSender, send_safely
from authcore.storage.common import AccountRepository, update_account_with_retry
from authcore.storage.models import Account

logger = get_logger(__name__)


class LockoutPolicy:
    """Failed-attempt counter and temporary lock for accounts.

    An account is Locked while ``lockout_until`` lies in the future and
    becomes Active again on its own once that instant passes. Counter and
    lock are written with compare-and-swap on the account version so
    concurrent failures are never lost.
    """

    def __init__(
        self,
        store: AccountRepository,
        settings: Settings,
        notifier: Optional[NotificationSender] = None,
    ) -> None:
        self.store = store
        self.threshold = settings.lockout_threshold
        self.duration = timedelta(minutes=settings.lockout_minutes)
        self.notifier = notifier

    @staticmethod
    def is_locked(account: Account, now: datetime) -> bool:
        return account.lockout_until is not None and account.lockout_until > now

    @staticmethod
    def retry_after(account: Account, now: datetime) -> int:
        """Whole seconds until the lock lifts, 0 when not locked."""
        if account.lockout_until is None or account.lockout_until <= now:
            return 0
        return max(1, math.ceil((account.lockout_until - now).total_seconds()))

    def record_failure(self, account_id: str, now: datetime) -> Optional[Account]:
        def _apply(account: Account) -> Optional[Account]:
            if account.lockout_until is not None and account.lockout_until <= now:
                # previous lock served; start a fresh window
                account.failed_login_attempts = 0
                account.lockout_until = None
            if self.is_locked(account, now):
                return None
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= self.threshold:
                account.lockout_until = now + self.duration
            account.updated_at = now
            return account

        outcome = update_account_with_retry(self.store, account_id, _apply)
        if outcome is None:
            return None
        before, after = outcome
        logger.info(
            "login_failure_recorded",
            account_id=account_id,
            failed_attempts=after.failed_login_attempts,
        )
        if not self.is_locked(before, now) and self.is_locked(after, now):
            logger.warning(
                "account_locked",
                account_id=account_id,
                locked_until=after.lockout_until.isoformat(),
                failed_attempts=after.failed_login_attempts,
            )
            if self.notifier is not None:
                send_safely(
                    "lockout_notice",
                    self.notifier.send_lockout_notice,
                    after.email,
                    after.lockout_until,
                )
        return after

    def record_success(self, account_id: str, now: datetime) -> Optional[Account]:
        def _apply(account: Account) -> Optional[Account]:
            if account.failed_login_attempts == 0 and account.lockout_until is None:
                return None
            account.failed_login_attempts = 0
            account.lockout_until = None
            account.updated_at = now
            return account

        outcome = update_account_with_retry(self.store, account_id, _apply)
        if outcome is None:
            return None
        return outcome[1]
