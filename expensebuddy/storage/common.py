"""Common storage utilities shared between memory and postgres implementations.

Both back ends expose the same ``FamilyStore`` surface so services can be
exercised against the in-memory store in tests and Postgres in production.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from expensebuddy.storage.models import (
    Family,
    FamilyJoinRequest,
    JoinRequestStatus,
    Role,
    User,
)

# Columns a caller may patch through update_user / update_user_if
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "middle_name",
        "is_email_verified",
        "email_verification_token",
        "email_verification_expires_at",
        "password_reset_token",
        "password_reset_expires_at",
        "family_id",
        "role_in_family",
        "is_active",
        "last_login_at",
    }
)

FAMILY_MUTABLE_FIELDS = frozenset(
    {"name", "description", "is_active", "invite_code", "invite_code_expires_at"}
)

SEARCH_RESULT_LIMIT = 10


class FamilyStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        middle_name: str = "",
        family_id: Optional[str] = None,
        role_in_family: Role = Role.MEMBER,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def update_user_if(
        self, user_id: str, expected: Mapping[str, Any], **fields: Any
    ) -> Optional[User]: ...

    def list_family_members(self, family_id: str) -> List[User]: ...

    def create_family(
        self,
        name: str,
        description: str = "",
        *,
        owner_id: Optional[str] = None,
        invite_code: Optional[str] = None,
        invite_code_expires_at: Optional[datetime] = None,
    ) -> Family: ...

    def get_family(
        self, family_id: str, *, include_ownerless: bool = False
    ) -> Optional[Family]: ...

    def get_family_by_invite_code(self, invite_code: str) -> Optional[Family]: ...

    def assign_family_owner(self, family_id: str, owner_id: str) -> Optional[Family]: ...

    def update_family(self, family_id: str, **fields: Any) -> Optional[Family]: ...

    def delete_family(self, family_id: str) -> bool: ...

    def search_families(self, term: str, limit: int = SEARCH_RESULT_LIMIT) -> List[Family]: ...

    def count_family_members(self, family_id: str) -> int: ...

    def create_join_request(
        self,
        user_id: str,
        family_id: str,
        owner_id: str,
        message: Optional[str] = None,
    ) -> FamilyJoinRequest: ...

    def get_join_request(self, request_id: str) -> Optional[FamilyJoinRequest]: ...

    def resolve_join_request(
        self,
        request_id: str,
        status: JoinRequestStatus,
        *,
        response_message: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> Optional[FamilyJoinRequest]: ...

    def list_join_requests(
        self,
        *,
        owner_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[JoinRequestStatus] = None,
    ) -> List[FamilyJoinRequest]: ...


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    """Canonical form used for storage and every lookup."""
    return (email or "").strip().lower()


def generate_invite_code() -> str:
    """16 upper-case hex characters, matching the join-by-code input rule."""
    return secrets.token_hex(8).upper()


def check_user_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {sorted(unknown)}")


def check_family_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - FAMILY_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported family fields: {sorted(unknown)}")


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from the database as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def user_from_row(row: Mapping[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        middle_name=row.get("middle_name") or "",
        is_email_verified=bool(row.get("is_email_verified", False)),
        email_verification_token=row.get("email_verification_token"),
        email_verification_expires_at=ensure_utc(row.get("email_verification_expires_at")),
        password_reset_token=row.get("password_reset_token"),
        password_reset_expires_at=ensure_utc(row.get("password_reset_expires_at")),
        family_id=str(row["family_id"]) if row.get("family_id") else None,
        role_in_family=Role(row.get("role_in_family") or Role.MEMBER.value),
        is_active=bool(row.get("is_active", True)),
        last_login_at=ensure_utc(row.get("last_login_at")),
        created_at=ensure_utc(row.get("created_at")) or datetime.now(timezone.utc),
        updated_at=ensure_utc(row.get("updated_at")) or datetime.now(timezone.utc),
    )


def family_from_row(row: Mapping[str, Any]) -> Family:
    return Family(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description") or "",
        owner_id=str(row["owner_id"]) if row.get("owner_id") else None,
        is_active=bool(row.get("is_active", True)),
        invite_code=row.get("invite_code"),
        invite_code_expires_at=ensure_utc(row.get("invite_code_expires_at")),
        created_at=ensure_utc(row.get("created_at")) or datetime.now(timezone.utc),
        updated_at=ensure_utc(row.get("updated_at")) or datetime.now(timezone.utc),
    )


def join_request_from_row(row: Mapping[str, Any]) -> FamilyJoinRequest:
    return FamilyJoinRequest(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        family_id=str(row["family_id"]),
        owner_id=str(row["owner_id"]),
        status=JoinRequestStatus(row.get("status") or JoinRequestStatus.PENDING.value),
        message=row.get("message"),
        response_message=row.get("response_message"),
        requested_at=ensure_utc(row.get("requested_at")) or datetime.now(timezone.utc),
        responded_at=ensure_utc(row.get("responded_at")),
        is_active=bool(row.get("is_active", True)),
    )


def to_storable(value: Any) -> Any:
    """Flatten enums and datetimes for JSON state files."""
    if isinstance(value, (Role, JoinRequestStatus)):
        return value.value
    if isinstance(value, datetime):
        return serialize_datetime(value)
    return value


def record_to_dict(record: Any) -> Dict[str, Any]:
    return {key: to_storable(value) for key, value in vars(record).items()}
