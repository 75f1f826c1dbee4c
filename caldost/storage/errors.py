from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or version constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleRecordError(ConstraintViolation):
    """Raised when a save carries a version older than the stored record."""


__all__ = ["ConstraintViolation", "StaleRecordError"]
