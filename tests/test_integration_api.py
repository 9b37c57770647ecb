"""Integration tests for the HTTP API.

Drives the full stack (routes, services, memory store) through TestClient:
- Registration, login, verification, refresh and logout
- Password reset and email change
- Family creation, invite codes, join requests and member management
- Envelope shape, correlation IDs and rate limiting
"""

import pytest
from fastapi.testclient import TestClient

from expensebuddy import app as app_module
from expensebuddy.service.runtime import get_runtime

PASSWORD = "CorrectHorse1"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email, **extra):
    payload = {"email": email, "password": PASSWORD, "first_name": "Pat", "last_name": "Doe"}
    payload.update(extra)
    response = client.post("/v1/auth/register", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


class TestAuthFlow:
    def test_register_and_me(self, client):
        data = _register(client, "pat@example.com")

        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "pat@example.com"
        assert data["user"]["family_id"] is None
        assert "password_hash" not in data["user"]

        me = client.get("/v1/auth/me", headers=_auth(data))
        assert me.status_code == 200
        assert me.json()["data"]["id"] == data["user"]["id"]

    def test_register_duplicate(self, client):
        _register(client, "pat@example.com")
        response = client.post(
            "/v1/auth/register",
            json={"email": "PAT@example.com", "password": PASSWORD, "first_name": "P", "last_name": "D"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "USER_EXISTS"

    def test_register_validation(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "pat@example.com", "password": "short", "first_name": "P", "last_name": "D"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_register_rejects_two_family_options(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "pat@example.com",
                "password": PASSWORD,
                "first_name": "P",
                "last_name": "D",
                "family_name": "Does",
                "invite_code": "ABCDEF0123456789",
            },
        )
        assert response.status_code == 400

    def test_login_failures_are_indistinguishable(self, client):
        _register(client, "pat@example.com")

        unknown = client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        wrong = client.post("/v1/auth/login", json={"email": "pat@example.com", "password": "bad-password"})

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert unknown.json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_login_rate_limited(self, client):
        limit = get_runtime().settings.login_rate_limit_per_minute
        body = {"email": "flood@example.com", "password": PASSWORD}
        for _ in range(limit):
            assert client.post("/v1/auth/login", json=body).status_code == 401

        response = client.post("/v1/auth/login", json=body)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"

    def test_verify_email_is_idempotent(self, client):
        _register(client, "pat@example.com")
        token = get_runtime().store.get_user_by_email("pat@example.com").email_verification_token

        first = client.post("/v1/auth/verify-email", json={"token": f" {token}\n"})
        second = client.post("/v1/auth/verify-email", json={"token": token})

        assert first.status_code == second.status_code == 200
        assert get_runtime().store.get_user_by_email("pat@example.com").is_email_verified

    def test_verification_email_lands_in_dev_outbox(self, client):
        _register(client, "pat@example.com")
        outbox = get_runtime().email.outbox
        assert outbox[-1]["kind"] == "verification"
        assert "/auth/verify-email?token=" in outbox[-1]["text"]

    def test_refresh_then_logout(self, client):
        data = _register(client, "pat@example.com")

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]

        reused = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "TOKEN_REVOKED"

        logout = client.post(
            "/v1/auth/logout",
            json={"refresh_token": new_tokens["refresh_token"]},
            headers=_auth(new_tokens),
        )
        assert logout.status_code == 200

        me = client.get("/v1/auth/me", headers=_auth(new_tokens))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "TOKEN_REVOKED"

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_password_reset_flow(self, client):
        _register(client, "pat@example.com")

        unknown = client.post("/v1/auth/reset/request", json={"email": "ghost@example.com"})
        known = client.post("/v1/auth/reset/request", json={"email": "pat@example.com"})
        assert unknown.status_code == known.status_code == 200
        unknown_body, known_body = unknown.json(), known.json()
        unknown_body.pop("request_id")
        known_body.pop("request_id")
        assert unknown_body == known_body

        token = get_runtime().store.get_user_by_email("pat@example.com").password_reset_token
        confirm = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": "BrandNewPass9"}
        )
        assert confirm.status_code == 200

        login = client.post("/v1/auth/login", json={"email": "pat@example.com", "password": "BrandNewPass9"})
        assert login.status_code == 200

    def test_change_password_wrong_current_is_400(self, client):
        data = _register(client, "pat@example.com")
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "not-the-one", "new_password": "BrandNewPass9"},
            headers=_auth(data),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INCORRECT_PASSWORD"

    def test_email_change_revokes_presented_session(self, client):
        data = _register(client, "pat@example.com")
        requested = client.post(
            "/v1/auth/email/change",
            json={"new_email": "new@example.com", "current_password": PASSWORD},
            headers=_auth(data),
        )
        assert requested.status_code == 200
        text = get_runtime().email.outbox[-1]["text"]
        token = text.split("/auth/confirm-email-change?token=", 1)[1].split()[0]

        confirmed = client.post("/v1/auth/email/confirm", json={"token": token}, headers=_auth(data))
        assert confirmed.status_code == 200

        assert client.get("/v1/auth/me", headers=_auth(data)).status_code == 401
        login = client.post("/v1/auth/login", json={"email": "new@example.com", "password": PASSWORD})
        assert login.status_code == 200


class TestFamilyFlow:
    def test_owner_family_and_join_by_code(self, client):
        owner = _register(client, "owner@example.com", family_name="Does")
        mine = client.get("/v1/families/mine", headers=_auth(owner)).json()["data"]
        assert mine["name"] == "Does"
        assert mine["member_count"] == 1
        code = mine["invite_code"]
        assert len(code) == 16

        member = _register(client, "kid@example.com")
        joined = client.post(
            "/v1/families/join", json={"invite_code": code.lower()}, headers=_auth(member)
        )
        assert joined.status_code == 200
        assert joined.json()["data"]["role_in_family"] == "MEMBER"

        member_view = client.get("/v1/families/mine", headers=_auth(member)).json()["data"]
        assert member_view["invite_code"] is None

        members = client.get("/v1/families/mine/members", headers=_auth(owner)).json()["data"]
        assert {m["email"] for m in members["items"]} == {"owner@example.com", "kid@example.com"}

        forbidden = client.get("/v1/families/mine/members", headers=_auth(member))
        assert forbidden.status_code == 403

    def test_create_family_after_registration(self, client):
        user = _register(client, "pat@example.com")
        created = client.post("/v1/families", json={"name": "Does"}, headers=_auth(user))

        assert created.status_code == 201
        assert created.json()["data"]["owner_id"] == user["user"]["id"]

        again = client.post("/v1/families", json={"name": "Again"}, headers=_auth(user))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "USER_ALREADY_IN_FAMILY"

    def test_join_request_is_resolved_once(self, client):
        owner = _register(client, "owner@example.com", family_name="Does")
        family_id = owner["user"]["family_id"]
        requester = _register(client, "pat@example.com")

        search = client.get("/v1/families/search", params={"q": "doe"}, headers=_auth(requester))
        assert [f["id"] for f in search.json()["data"]["items"]] == [family_id]
        assert search.json()["data"]["items"][0]["invite_code"] is None

        created = client.post(
            "/v1/families/join-requests",
            json={"family_id": family_id, "message": "hi"},
            headers=_auth(requester),
        )
        assert created.status_code == 201
        request_id = created.json()["data"]["id"]

        duplicate = client.post(
            "/v1/families/join-requests", json={"family_id": family_id}, headers=_auth(requester)
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "DUPLICATE_FAMILY_REQUEST"

        incoming = client.get(
            "/v1/families/join-requests/incoming",
            params={"status": "PENDING"},
            headers=_auth(owner),
        )
        assert [r["id"] for r in incoming.json()["data"]["items"]] == [request_id]

        approve = client.post(
            f"/v1/families/join-requests/{request_id}/respond",
            json={"response": "APPROVE"},
            headers=_auth(owner),
        )
        assert approve.status_code == 200
        assert approve.json()["data"]["status"] == "APPROVED"

        again = client.post(
            f"/v1/families/join-requests/{request_id}/respond",
            json={"response": "REJECT"},
            headers=_auth(owner),
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "REQUEST_ALREADY_PROCESSED"

        mine = client.get("/v1/families/join-requests/mine", headers=_auth(requester))
        assert mine.json()["data"]["items"][0]["status"] == "APPROVED"

    def test_invitation_accept_flow(self, client):
        owner = _register(client, "owner@example.com", family_name="Does")
        guest = _register(client, "guest@example.com")

        owner_invite = client.post(
            "/v1/families/mine/invitations",
            json={"email": "guest@example.com", "role": "OWNER"},
            headers=_auth(owner),
        )
        assert owner_invite.status_code == 400

        invited = client.post(
            "/v1/families/mine/invitations",
            json={"email": "guest@example.com", "role": "ADMIN"},
            headers=_auth(owner),
        )
        assert invited.status_code == 200
        text = get_runtime().email.outbox[-1]["text"]
        token = text.split("/auth/family-invitation?token=", 1)[1].split()[0]

        accepted = client.post(
            "/v1/families/invitations/accept", json={"token": token}, headers=_auth(guest)
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"]["role_in_family"] == "ADMIN"

    def test_owner_protection(self, client):
        owner = _register(client, "owner@example.com", family_name="Does")
        owner_id = owner["user"]["id"]

        leave = client.post("/v1/families/mine/leave", headers=_auth(owner))
        assert leave.status_code == 403
        assert leave.json()["error"]["code"] == "OWNER_PROTECTED"

        demote = client.patch(
            f"/v1/families/mine/members/{owner_id}", json={"role": "MEMBER"}, headers=_auth(owner)
        )
        assert demote.status_code == 403

    def test_member_management(self, client):
        owner = _register(client, "owner@example.com", family_name="Does")
        code = client.get("/v1/families/mine", headers=_auth(owner)).json()["data"]["invite_code"]
        member = _register(client, "kid@example.com", invite_code=code)
        member_id = member["user"]["id"]

        promoted = client.patch(
            f"/v1/families/mine/members/{member_id}", json={"role": "ADMIN"}, headers=_auth(owner)
        )
        assert promoted.status_code == 200
        assert promoted.json()["data"]["role_in_family"] == "ADMIN"

        other = _register(client, "teen@example.com", invite_code=code)
        by_admin = client.delete(
            f"/v1/families/mine/members/{other['user']['id']}", headers=_auth(member)
        )
        assert by_admin.status_code == 403
        assert by_admin.json()["error"]["code"] == "FORBIDDEN"

        removed = client.delete(f"/v1/families/mine/members/{member_id}", headers=_auth(owner))
        assert removed.status_code == 200
        assert client.get("/v1/families/mine", headers=_auth(member)).json()["data"] is None

    def test_update_and_regenerate(self, client):
        owner = _register(client, "owner@example.com", family_name="Does")
        before = client.get("/v1/families/mine", headers=_auth(owner)).json()["data"]

        updated = client.patch(
            "/v1/families/mine", json={"description": "Groceries and rent"}, headers=_auth(owner)
        )
        assert updated.json()["data"]["description"] == "Groceries and rent"

        empty = client.patch("/v1/families/mine", json={}, headers=_auth(owner))
        assert empty.status_code == 400

        regenerated = client.post("/v1/families/mine/invite-code", headers=_auth(owner))
        assert regenerated.json()["data"]["invite_code"] != before["invite_code"]

    def test_bad_invite_code_format(self, client):
        user = _register(client, "pat@example.com")
        response = client.post("/v1/families/join", json={"invite_code": "nope"}, headers=_auth(user))
        assert response.status_code == 400


class TestEnvelopeAndHeaders:
    def test_request_id_round_trip(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_and_version_headers(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["checks"]["store"]["type"] == "memory"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["API-Version"] == app_module.__version__
        assert response.headers["Cache-Control"] == "no-store"
