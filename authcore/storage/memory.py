from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import ROLE_ADMIN, Account, RecoveryCode, RefreshSession


class MemoryStore:
    """In-process account store used by tests and single-node development.

    Every read returns a copy, so callers never mutate stored rows in place;
    all writes go through the methods below under one re-entrant lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self.recovery_codes: Dict[str, RecoveryCode] = {}
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()

    # accounts
    def create_account(
        self, account: Account, *, promote_if_first: bool = False
    ) -> Account:
        with self._data_lock:
            email = normalize_email(account.email)
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(account, email=email)
            if promote_if_first and not self.accounts:
                stored.role = ROLE_ADMIN
            self.accounts[stored.id] = stored
            return replace(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return replace(account) if account else None

    def get_account_by_confirmation_token(
        self, token_hash: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.email_confirmation_token_hash == token_hash
                ),
                None,
            )
            return replace(account) if account else None

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.password_reset_token_hash == token_hash
                ),
                None,
            )
            return replace(account) if account else None

    def update_account(
        self, account: Account, expected_version: int
    ) -> Optional[Account]:
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None or current.version != expected_version:
                return None
            email = normalize_email(account.email)
            if email != current.email and any(
                other.email == email
                for other in self.accounts.values()
                if other.id != account.id
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(account, email=email, version=expected_version + 1)
            self.accounts[account.id] = stored
            return replace(stored)

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    # refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if session.token_hash in self.refresh_sessions:
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self.refresh_sessions[session.token_hash] = replace(session)
            return replace(session)

    def get_refresh_session(self, token_hash: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session = self.refresh_sessions.get(token_hash)
            return replace(session) if session else None

    def rotate_refresh_session(
        self, old_token_hash: str, successor: RefreshSession, now: datetime
    ) -> Optional[RefreshSession]:
        with self._data_lock:
            current = self.refresh_sessions.get(old_token_hash)
            if current is None or not current.is_active(now):
                return None
            if current.account_id != successor.account_id:
                return None
            created = self.create_refresh_session(successor)
            self.refresh_sessions[old_token_hash] = replace(
                current, revoked=True, revoked_at=now, replaced_by=created.id
            )
            return created

    def revoke_refresh_session(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            current = self.refresh_sessions.get(token_hash)
            if current is None or current.revoked:
                return False
            self.refresh_sessions[token_hash] = replace(
                current, revoked=True, revoked_at=now
            )
            return True

    def revoke_account_sessions(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token_hash, session in list(self.refresh_sessions.items()):
                if session.account_id == account_id and not session.revoked:
                    self.refresh_sessions[token_hash] = replace(
                        session, revoked=True, revoked_at=now
                    )
                    revoked += 1
            return revoked

    def list_refresh_sessions(self, account_id: str) -> List[RefreshSession]:
        with self._data_lock:
            return sorted(
                (
                    replace(s)
                    for s in self.refresh_sessions.values()
                    if s.account_id == account_id
                ),
                key=lambda s: s.created_at,
            )

    # recovery codes
    def replace_recovery_codes(
        self, account_id: str, codes: List[RecoveryCode]
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": account_id}
                )
            self.delete_recovery_codes(account_id)
            for code in codes:
                self.recovery_codes[code.id] = replace(code, account_id=account_id)

    def list_unused_recovery_codes(self, account_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return sorted(
                (
                    replace(c)
                    for c in self.recovery_codes.values()
                    if c.account_id == account_id and not c.used
                ),
                key=lambda c: c.created_at,
            )

    def mark_recovery_code_used(self, code_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            code = self.recovery_codes.get(code_id)
            if code is None or code.used:
                return False
            self.recovery_codes[code_id] = replace(code, used=True, used_at=used_at)
            return True

    def delete_recovery_codes(self, account_id: str) -> int:
        with self._data_lock:
            stale = [
                cid for cid, c in self.recovery_codes.items() if c.account_id == account_id
            ]
            for cid in stale:
                self.recovery_codes.pop(cid, None)
            return len(stale)
