from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from expensebuddy.logging import get_logger
from expensebuddy.storage.common import (
    SEARCH_RESULT_LIMIT,
    check_family_fields,
    check_user_fields,
    deserialize_datetime,
    family_from_row,
    generate_uuid,
    join_request_from_row,
    normalize_email,
    record_to_dict,
    user_from_row,
)
from expensebuddy.storage.errors import (
    PENDING_JOIN_REQUEST_UNIQUE,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
)
from expensebuddy.storage.models import (
    Family,
    FamilyJoinRequest,
    JoinRequestStatus,
    Role,
    User,
)

_DATETIME_KEYS = (
    "email_verification_expires_at",
    "password_reset_expires_at",
    "last_login_at",
    "created_at",
    "updated_at",
    "invite_code_expires_at",
    "requested_at",
    "responded_at",
)


class MemoryStore:
    """In-memory backing store persisted to a JSON state file.

    Every read and write runs under one RLock, which gives the same
    single-document atomicity the Postgres store gets from conditional
    UPDATE statements.
    """

    def __init__(self, fs_root: str = "/tmp/expensebuddy") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.families: Dict[str, Family] = {}
        self.join_requests: Dict[str, FamilyJoinRequest] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- users ---------------------------------------------------------------

    def _find_user_by_email(self, email: str) -> Optional[User]:
        canonical = normalize_email(email)
        for user in self.users.values():
            if user.email == canonical:
                return user
        return None

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
    ) -> User:
        with self._data_lock:
            canonical = normalize_email(email)
            if self._find_user_by_email(canonical):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
                )
            user = User(
                id=generate_uuid(),
                email=canonical,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                middle_name=middle_name,
                family_id=family_id,
                role_in_family=role_in_family,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        return self.update_user_if(user_id, {}, **fields)

    def update_user_if(
        self, user_id: str, expected: Mapping[str, Any], **fields: Any
    ) -> Optional[User]:
        """Apply ``fields`` only while every ``expected`` column still matches.

        Returns the updated user, or None when the user is missing or a
        precondition no longer holds.
        """
        check_user_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in expected.items():
                if getattr(user, key) != value:
                    return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                clash = self._find_user_by_email(fields["email"])
                if clash and clash.id != user_id:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}, constraint=USER_EMAIL_UNIQUE
                    )
            updated = replace(user, **fields, updated_at=self._now())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def list_family_members(self, family_id: str) -> List[User]:
        with self._data_lock:
            members = [
                replace(u)
                for u in self.users.values()
                if u.family_id == family_id and u.is_active
            ]
        members.sort(key=lambda u: u.created_at)
        return members

    def count_family_members(self, family_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for u in self.users.values() if u.family_id == family_id and u.is_active
            )

    # -- families ------------------------------------------------------------

    def create_family(
        self,
        name: str,
        description: str = "",
        *,
        owner_id: Optional[str] = None,
        invite_code: Optional[str] = None,
        invite_code_expires_at: Optional[datetime] = None,
    ) -> Family:
        with self._data_lock:
            family = Family(
                id=generate_uuid(),
                name=name,
                description=description or "",
                owner_id=owner_id,
                invite_code=invite_code,
                invite_code_expires_at=invite_code_expires_at,
            )
            self.families[family.id] = family
            self._persist_state()
            return replace(family)

    def get_family(
        self, family_id: str, *, include_ownerless: bool = False
    ) -> Optional[Family]:
        with self._data_lock:
            family = self.families.get(family_id)
            if not family:
                return None
            if family.owner_id is None and not include_ownerless:
                return None
            return replace(family)

    def get_family_by_invite_code(self, invite_code: str) -> Optional[Family]:
        with self._data_lock:
            for family in self.families.values():
                if family.invite_code == invite_code and family.owner_id is not None:
                    return replace(family)
        return None

    def assign_family_owner(self, family_id: str, owner_id: str) -> Optional[Family]:
        with self._data_lock:
            family = self.families.get(family_id)
            if not family or family.owner_id is not None:
                return None
            updated = replace(family, owner_id=owner_id, updated_at=self._now())
            self.families[family_id] = updated
            self._persist_state()
            return replace(updated)

    def update_family(self, family_id: str, **fields: Any) -> Optional[Family]:
        check_family_fields(fields)
        with self._data_lock:
            family = self.families.get(family_id)
            if not family or family.owner_id is None:
                return None
            updated = replace(family, **fields, updated_at=self._now())
            self.families[family_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_family(self, family_id: str) -> bool:
        with self._data_lock:
            removed = self.families.pop(family_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def search_families(self, term: str, limit: int = SEARCH_RESULT_LIMIT) -> List[Family]:
        needle = (term or "").strip().lower()
        with self._data_lock:
            matches = [
                replace(f)
                for f in self.families.values()
                if f.is_active and f.owner_id is not None and needle in f.name.lower()
            ]
        matches.sort(key=lambda f: f.name.lower())
        return matches[:limit]

    # -- join requests -------------------------------------------------------

    def create_join_request(
        self,
        user_id: str,
        family_id: str,
        owner_id: str,
        message: Optional[str] = None,
    ) -> FamilyJoinRequest:
        with self._data_lock:
            for existing in self.join_requests.values():
                if (
                    existing.user_id == user_id
                    and existing.family_id == family_id
                    and existing.status == JoinRequestStatus.PENDING
                    and existing.is_active
                ):
                    raise ConstraintViolation(
                        "pending join request already exists",
                        {"user_id": user_id, "family_id": family_id},
                        constraint=PENDING_JOIN_REQUEST_UNIQUE,
                    )
            request = FamilyJoinRequest(
                id=generate_uuid(),
                user_id=user_id,
                family_id=family_id,
                owner_id=owner_id,
                message=message,
            )
            self.join_requests[request.id] = request
            self._persist_state()
            return replace(request)

    def get_join_request(self, request_id: str) -> Optional[FamilyJoinRequest]:
        with self._data_lock:
            request = self.join_requests.get(request_id)
            return replace(request) if request else None

    def resolve_join_request(
        self,
        request_id: str,
        status: JoinRequestStatus,
        *,
        response_message: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> Optional[FamilyJoinRequest]:
        """Move a PENDING request to a terminal status; None if already resolved."""
        with self._data_lock:
            request = self.join_requests.get(request_id)
            if not request or request.status != JoinRequestStatus.PENDING:
                return None
            updated = replace(
                request,
                status=status,
                response_message=response_message,
                responded_at=responded_at or self._now(),
            )
            self.join_requests[request_id] = updated
            self._persist_state()
            return replace(updated)

    def list_join_requests(
        self,
        *,
        owner_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[JoinRequestStatus] = None,
    ) -> List[FamilyJoinRequest]:
        with self._data_lock:
            results = [
                replace(r)
                for r in self.join_requests.values()
                if r.is_active
                and (owner_id is None or r.owner_id == owner_id)
                and (user_id is None or r.user_id == user_id)
                and (status is None or r.status == status)
            ]
        results.sort(key=lambda r: r.requested_at, reverse=True)
        return results

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [record_to_dict(u) for u in self.users.values()],
            "families": [record_to_dict(f) for f in self.families.values()],
            "join_requests": [record_to_dict(r) for r in self.join_requests.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    @staticmethod
    def _revive(data: Dict[str, Any]) -> Dict[str, Any]:
        revived = dict(data)
        for key in _DATETIME_KEYS:
            if isinstance(revived.get(key), str):
                revived[key] = deserialize_datetime(revived[key])
        return revived

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {
                u["id"]: user_from_row(self._revive(u)) for u in data.get("users", [])
            }
            self.families = {
                f["id"]: family_from_row(self._revive(f)) for f in data.get("families", [])
            }
            self.join_requests = {
                r["id"]: join_request_from_row(self._revive(r))
                for r in data.get("join_requests", [])
            }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            families=len(self.families),
            join_requests=len(self.join_requests),
        )
        return True
