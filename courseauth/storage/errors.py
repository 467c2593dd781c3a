from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint on users or tokens is violated.

    ``field`` names the offending column (``email`` or ``token``) so callers
    can translate the violation into a domain error without parsing messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field or (detail or {}).get("field")
        self.detail = detail or ({"field": field} if field else {})


__all__ = ["ConstraintViolation"]
