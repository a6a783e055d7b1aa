from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign key rule of the store was violated.

    ``constraint`` names the rule (``credential_email``, ``credential_user``,
    ``user_account``) so callers can report which field collided.
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
        self.constraint = constraint
        self.detail = detail or {}
        if constraint and "constraint" not in self.detail:
            self.detail["constraint"] = constraint


__all__ = ["ConstraintViolation"]
