from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from expensebuddy.service.tokens import TokenPair
from expensebuddy.storage.models import Family, FamilyJoinRequest, FamilySummary, User

MAX_TOKEN_LENGTH = 4096
_ERROR_CODE = re.compile(r"^[A-Z][A-Z_]*$")
_INVITE_CODE = re.compile(r"^[A-Z0-9]{16}$")


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_password_length(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _clean_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("invalid email address")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body. ``code`` is a stable upper-case identifier."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.match(value):
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- auth requests -----------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    middle_name: str = Field(default="", max_length=50)
    family_name: Optional[str] = Field(default=None, max_length=100)
    family_description: str = Field(default="", max_length=500)
    invite_code: Optional[str] = Field(default=None, max_length=32)
    invitation_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _clean_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)

    @field_validator("first_name", "last_name", "middle_name", "family_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value).strip() if value is not None else None

    @model_validator(mode="after")
    def _one_family_option(self):
        chosen = [
            name
            for name in ("family_name", "invite_code", "invitation_token")
            if getattr(self, name)
        ]
        if len(chosen) > 1:
            raise ValueError(f"provide at most one of {', '.join(chosen)}")
        return self


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TokenRequest(BaseModel):
    """Body for endpoints that consume a single emailed token."""

    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _normalize_reset_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class EmailChangeRequest(BaseModel):
    new_email: str = Field(..., max_length=320)
    current_password: str = Field(..., min_length=1, max_length=128)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _clean_email(value)


# -- family requests ---------------------------------------------------------


class FamilyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)


class FamilyUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _require_change(self):
        if self.name is None and self.description is None:
            raise ValueError("provide name or description")
        return self


class FamilyInviteRequest(BaseModel):
    email: str = Field(..., max_length=320)
    role: Literal["OWNER", "ADMIN", "MEMBER"] = "MEMBER"
    message: Optional[str] = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _clean_email(value)


class JoinByCodeRequest(BaseModel):
    invite_code: str

    @field_validator("invite_code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        code = value.strip().upper()
        if not _INVITE_CODE.match(code):
            raise ValueError("invite code must be 16 letters or digits")
        return code


class JoinRequestCreate(BaseModel):
    family_id: str = Field(..., min_length=1, max_length=64)
    message: Optional[str] = Field(default=None, max_length=500)


class JoinRequestDecision(BaseModel):
    response: Literal["APPROVE", "REJECT"]
    message: Optional[str] = Field(default=None, max_length=500)


class MemberRoleUpdate(BaseModel):
    role: Literal["OWNER", "ADMIN", "MEMBER"]


# -- responses ---------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    middle_name: str = ""
    full_name: str
    is_email_verified: bool
    family_id: Optional[str] = None
    role_in_family: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            middle_name=user.middle_name,
            full_name=user.full_name,
            is_email_verified=user.is_email_verified,
            family_id=user.family_id,
            role_in_family=user.role_in_family.value if user.family_id else None,
            is_active=user.is_active,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class MemberResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role_in_family: str

    @classmethod
    def from_user(cls, user: User) -> "MemberResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role_in_family=user.role_in_family.value,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_at=pair.expires_at,
        )


class AuthResponse(TokenResponse):
    user: UserResponse


class FamilyResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    owner_id: Optional[str] = None
    is_active: bool = True
    # Only populated for the owner
    invite_code: Optional[str] = None
    invite_code_expires_at: Optional[datetime] = None
    member_count: Optional[int] = None
    owner: Optional[MemberResponse] = None
    created_at: datetime

    @classmethod
    def from_family(
        cls, family: Family, *, include_invite_code: bool = False
    ) -> "FamilyResponse":
        return cls(
            id=family.id,
            name=family.name,
            description=family.description,
            owner_id=family.owner_id,
            is_active=family.is_active,
            invite_code=family.invite_code if include_invite_code else None,
            invite_code_expires_at=family.invite_code_expires_at if include_invite_code else None,
            created_at=family.created_at,
        )

    @classmethod
    def from_summary(
        cls, summary: FamilySummary, *, include_invite_code: bool = False
    ) -> "FamilyResponse":
        response = cls.from_family(summary.family, include_invite_code=include_invite_code)
        response.member_count = summary.member_count
        if summary.owner:
            response.owner = MemberResponse.from_user(summary.owner)
        return response


class FamilyListResponse(BaseModel):
    items: List[FamilyResponse]


class JoinRequestResponse(BaseModel):
    id: str
    user_id: str
    family_id: str
    owner_id: str
    status: str
    message: Optional[str] = None
    response_message: Optional[str] = None
    requested_at: datetime
    responded_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: FamilyJoinRequest) -> "JoinRequestResponse":
        return cls(
            id=request.id,
            user_id=request.user_id,
            family_id=request.family_id,
            owner_id=request.owner_id,
            status=request.status.value,
            message=request.message,
            response_message=request.response_message,
            requested_at=request.requested_at,
            responded_at=request.responded_at,
        )


class JoinRequestListResponse(BaseModel):
    items: List[JoinRequestResponse]


class MemberListResponse(BaseModel):
    items: List[MemberResponse]
