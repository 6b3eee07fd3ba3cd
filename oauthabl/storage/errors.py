from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for key-value gateway failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """Raised on transport, timeout, or serialization failure of the backing store."""


__all__ = ["StoreError", "StoreUnavailable"]
