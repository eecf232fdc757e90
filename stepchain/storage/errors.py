from __future__ import annotations

from typing import Any, Dict, Optional


class RecordNotFound(Exception):
    """Raised when a keyed record (workflow, log entry) does not exist."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["RecordNotFound"]
