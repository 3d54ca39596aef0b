from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthOrchestrator
from authcore.service.lockout import LockoutPolicy
from authcore.service.notifications import EmailNotificationSender, NotificationSender
from authcore.service.passwords import CredentialVerifier, PasswordHashing
from authcore.service.primitives import Clock, SecureRandom, SystemClock, SystemRandom
from authcore.service.recovery import RecoveryCodeVault
from authcore.service.temp_tokens import TempTokenProtector
from authcore.service.tokens import TokenService
from authcore.service.totp import TwoFactorEngine
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password component of a DSN for log output."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***unparseable***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Builds and holds the authentication object graph."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        clock: Optional[Clock] = None,
        random: Optional[SecureRandom] = None,
        notifier: Optional[NotificationSender] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is None:
            store = self._build_store()
        self.store = store
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()
        self.notifier = notifier or EmailNotificationSender.from_settings(self.settings)

        self.hashing = PasswordHashing(self.settings)
        self.lockout = LockoutPolicy(self.store, self.settings, self.notifier)
        self.verifier = CredentialVerifier(
            self.store, self.hashing, self.lockout, self.clock
        )
        self.totp = TwoFactorEngine(self.settings, self.random)
        self.recovery = RecoveryCodeVault(
            self.store,
            self.hashing,
            self.random,
            default_count=self.settings.recovery_code_count,
        )
        self.temp_tokens = TempTokenProtector.from_settings(self.settings)
        self.tokens = TokenService(self.store, self.settings, self.random)
        self.auth = AuthOrchestrator(
            self.store,
            self.settings,
            clock=self.clock,
            random=self.random,
            hashing=self.hashing,
            lockout=self.lockout,
            verifier=self.verifier,
            totp=self.totp,
            recovery=self.recovery,
            temp_tokens=self.temp_tokens,
            tokens=self.tokens,
            notifier=self.notifier,
        )
        logger.info("runtime_init_completed", store_type=type(self.store).__name__)

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore()
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the singleton and cached settings so the next call rebuilds both."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()
