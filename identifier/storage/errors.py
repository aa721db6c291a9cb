from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(Exception):
    """Raised by update-style accessor calls when the target row does not exist."""

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.key = key


__all__ = ["ConstraintViolation", "RecordNotFound"]
