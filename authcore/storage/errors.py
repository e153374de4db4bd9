from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for store and cache failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness constraint is violated."""


class RecordNotFound(StorageError):
    """Raised when an update targets a record that does not exist."""


class StaleWrite(StorageError):
    """Raised when a conditional update's expected values no longer match."""


class StoreUnavailable(StorageError):
    """Durable store unreachable or timed out; safe to retry idempotent reads."""


class CacheUnavailable(StorageError):
    """Session cache unreachable or timed out."""


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "RecordNotFound",
    "StaleWrite",
    "StoreUnavailable",
    "CacheUnavailable",
]
