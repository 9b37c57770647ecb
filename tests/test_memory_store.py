"""Tests for MemoryStore persistence and its conditional-write primitives."""

from datetime import datetime, timedelta, timezone

import pytest

from expensebuddy.storage.errors import ConstraintViolation
from expensebuddy.storage.memory import MemoryStore
from expensebuddy.storage.models import JoinRequestStatus, Role


class TestUsers:
    def test_email_is_canonical_and_unique(self, memory_store):
        user = memory_store.create_user(" Pat@Example.com ", "hash")
        assert user.email == "pat@example.com"
        assert memory_store.get_user_by_email("PAT@example.COM").id == user.id

        with pytest.raises(ConstraintViolation):
            memory_store.create_user("pat@example.com", "hash")

    def test_update_user_if_checks_expected(self, memory_store):
        user = memory_store.create_user("pat@example.com", "hash")

        assert memory_store.update_user_if(user.id, {"family_id": "other"}, first_name="X") is None
        updated = memory_store.update_user_if(user.id, {"family_id": None}, first_name="Y")
        assert updated.first_name == "Y"

    def test_update_rejects_unknown_fields(self, memory_store):
        user = memory_store.create_user("pat@example.com", "hash")
        with pytest.raises(ValueError):
            memory_store.update_user(user.id, id="hijack")

    def test_email_update_respects_uniqueness(self, memory_store):
        memory_store.create_user("taken@example.com", "hash")
        user = memory_store.create_user("pat@example.com", "hash")
        with pytest.raises(ConstraintViolation):
            memory_store.update_user(user.id, email="TAKEN@example.com")

    def test_returned_records_are_copies(self, memory_store):
        user = memory_store.create_user("pat@example.com", "hash")
        user.first_name = "Mutated"
        assert memory_store.get_user(user.id).first_name == ""


class TestFamilies:
    def test_ownerless_family_is_invisible(self, memory_store):
        family = memory_store.create_family("Does", invite_code="ABCDEF0123456789")

        assert memory_store.get_family(family.id) is None
        assert memory_store.get_family(family.id, include_ownerless=True) is not None
        assert memory_store.get_family_by_invite_code("ABCDEF0123456789") is None
        assert memory_store.search_families("does") == []

    def test_assign_owner_only_once(self, memory_store):
        family = memory_store.create_family("Does")
        assert memory_store.assign_family_owner(family.id, "u1").owner_id == "u1"
        assert memory_store.assign_family_owner(family.id, "u2") is None
        assert memory_store.get_family(family.id).owner_id == "u1"

    def test_member_count_and_listing(self, memory_store):
        family = memory_store.create_family("Does")
        memory_store.assign_family_owner(family.id, "u1")
        a = memory_store.create_user("a@example.com", "h", family_id=family.id, role_in_family=Role.OWNER)
        b = memory_store.create_user("b@example.com", "h", family_id=family.id)
        memory_store.update_user(b.id, is_active=False)

        assert memory_store.count_family_members(family.id) == 1
        assert [u.id for u in memory_store.list_family_members(family.id)] == [a.id]

    def test_search_is_case_insensitive_and_limited(self, memory_store):
        for i in range(12):
            family = memory_store.create_family(f"Family {i:02d}")
            memory_store.assign_family_owner(family.id, f"owner-{i}")

        results = memory_store.search_families("FAMILY", limit=10)

        assert len(results) == 10
        assert results[0].name == "Family 00"


class TestJoinRequests:
    def test_single_pending_request_per_pair(self, memory_store):
        memory_store.create_join_request("u1", "f1", "o1")
        with pytest.raises(ConstraintViolation):
            memory_store.create_join_request("u1", "f1", "o1")
        # A different family is fine
        memory_store.create_join_request("u1", "f2", "o2")

    def test_resolve_is_exactly_once(self, memory_store):
        request = memory_store.create_join_request("u1", "f1", "o1")

        first = memory_store.resolve_join_request(request.id, JoinRequestStatus.APPROVED)
        second = memory_store.resolve_join_request(request.id, JoinRequestStatus.REJECTED)

        assert first.status == JoinRequestStatus.APPROVED
        assert first.responded_at is not None
        assert second is None
        assert memory_store.get_join_request(request.id).status == JoinRequestStatus.APPROVED

    def test_new_request_allowed_after_resolution(self, memory_store):
        request = memory_store.create_join_request("u1", "f1", "o1")
        memory_store.resolve_join_request(request.id, JoinRequestStatus.REJECTED)
        again = memory_store.create_join_request("u1", "f1", "o1")
        assert again.id != request.id


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        root = str(tmp_path / "persist")
        store = MemoryStore(fs_root=root)
        expires = datetime.now(timezone.utc) + timedelta(days=30)
        family = store.create_family("Does", invite_code="ABCDEF0123456789", invite_code_expires_at=expires)
        store.assign_family_owner(family.id, "owner")
        user = store.create_user("pat@example.com", "hash", family_id=family.id, role_in_family=Role.ADMIN)
        request = store.create_join_request("someone", family.id, "owner", "hi")

        reloaded = MemoryStore(fs_root=root)

        restored_user = reloaded.get_user(user.id)
        assert restored_user.role_in_family == Role.ADMIN
        assert restored_user.created_at.tzinfo is not None
        restored_family = reloaded.get_family(family.id)
        assert restored_family.invite_code_expires_at == expires
        assert restored_family.is_invite_code_valid()
        assert reloaded.get_join_request(request.id).status == JoinRequestStatus.PENDING
