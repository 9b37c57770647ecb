from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Role a user holds inside their family."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class JoinRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class JoinResponse(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    middle_name: str = ""
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    family_id: Optional[str] = None
    # Meaningless while family_id is None
    role_in_family: Role = Role.MEMBER
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(part for part in parts if part)

    @property
    def is_family_owner(self) -> bool:
        return self.family_id is not None and self.role_in_family == Role.OWNER


@dataclass
class Family:
    id: str
    name: str
    description: str = ""
    # None only between the two phases of family creation
    owner_id: Optional[str] = None
    is_active: bool = True
    invite_code: Optional[str] = None
    invite_code_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_invite_code_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return bool(
            self.is_active
            and self.invite_code
            and self.invite_code_expires_at
            and self.invite_code_expires_at > now
        )


@dataclass
class FamilyJoinRequest:
    id: str
    user_id: str
    family_id: str
    owner_id: str
    status: JoinRequestStatus = JoinRequestStatus.PENDING
    message: Optional[str] = None
    response_message: Optional[str] = None
    requested_at: datetime = field(default_factory=_utcnow)
    responded_at: Optional[datetime] = None
    is_active: bool = True


@dataclass
class FamilySummary:
    """Read model returned by family search."""

    family: Family
    member_count: int
    owner: Optional[User] = None
