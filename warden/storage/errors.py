from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write hit a uniqueness or foreign-key rule in either store.

    ``detail["field"]`` names the offending column (email, username,
    provider_key) so the auth service can raise a conflict without parsing
    driver messages.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
