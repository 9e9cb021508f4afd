from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageError(Exception):
    """Raised when a backing store is unreachable or rejects an operation."""

    def __init__(self, message: str, *, store: str, operation: str):
        super().__init__(message)
        self.message = message
        self.store = store
        self.operation = operation


__all__ = ["ConstraintViolation", "StorageError"]
