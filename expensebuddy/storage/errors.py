from __future__ import annotations

from typing import Any, Dict, Optional

# Names shared by the memory and Postgres stores so services can tell
# which uniqueness rule rejected a write.
USER_EMAIL_UNIQUE = "app_user_email_key"
PENDING_JOIN_REQUEST_UNIQUE = "family_join_request_pending_uq"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint rejects a write."""

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


__all__ = ["ConstraintViolation", "USER_EMAIL_UNIQUE", "PENDING_JOIN_REQUEST_UNIQUE"]
