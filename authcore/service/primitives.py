from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SecureRandom(Protocol):
    def token_bytes(self, nbytes: int) -> bytes: ...

    def token_urlsafe(self, nbytes: int) -> str: ...

    def randbelow(self, upper: int) -> int: ...


class SystemClock:
    """Wall clock returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemRandom:
    """CSPRNG backed by :mod:`secrets`."""

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)

    def token_urlsafe(self, nbytes: int) -> str:
        return secrets.token_urlsafe(nbytes)

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)
