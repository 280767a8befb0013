from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write would break a uniqueness or reference rule of the backing store.

    ``detail`` names the offending field (``{"field": "refresh_token"}``) so
    callers can turn it into a user-facing conflict without parsing text.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
