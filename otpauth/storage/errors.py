from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class LockNotAvailable(Exception):
    """Raised when a row lock is already held by another open transaction."""

    def __init__(self, table: str, row_id: Any):
        super().__init__(f"{table} row {row_id} is locked")
        self.table = table
        self.row_id = row_id


class TransactionClosedError(RuntimeError):
    """Raised when a committed or rolled back transaction handle is reused."""


__all__ = ["ConstraintViolation", "LockNotAvailable", "TransactionClosedError"]
