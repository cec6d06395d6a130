from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint or atomic guard fails.

    ``detail["reason"]`` names the guard (``email_taken``, ``slug_taken``,
    ``last_owner``, ``already_member``, ``already_invited``, ``already_banned``,
    ``invalid_state``, ``expired``) so services can translate it.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")


__all__ = ["ConstraintViolation"]
