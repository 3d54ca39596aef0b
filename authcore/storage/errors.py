from __future__ import annotations

from typing import Any, Mapping, Optional


class StorageError(Exception):
    """Base for faults raised by an account store backend."""

    def __init__(self, message: str, detail: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})


class ConstraintViolation(StorageError):
    """A write broke a uniqueness or referential rule (duplicate email, missing account)."""


class StorageUnavailable(StorageError):
    """The store could not complete the operation.

    Covers connection loss, pool exhaustion and exhausted optimistic
    concurrency retries. The message is safe to log; callers must not show
    it to end users.
    """


__all__ = ["ConstraintViolation", "StorageError", "StorageUnavailable"]
