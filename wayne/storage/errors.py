from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique or foreign-key constraint rejected a write.

    ``constraint`` names the violated rule (``users_email_key``,
    ``key_envelopes_user_id_key``, ...) so callers can map it to a domain error.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


__all__ = ["ConstraintViolation"]
