from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique identifier (email or phone) is already taken.

    ``field`` names the violated column so callers can report which
    identifier collided without parsing driver messages.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or {}
        if field and "field" not in self.detail:
            self.detail["field"] = field


__all__ = ["ConstraintViolation"]
