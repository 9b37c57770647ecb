"""Unit tests for the token service.

Covers:
- Issue/verify round trip with iss, aud, type, jti claims
- Type confusion between session and email-link tokens
- Expiry and clock-skew leeway
- Tampering and alg confusion
- Blacklisting with the in-process fallback
"""

import base64
import json
import time
from datetime import timedelta

import pytest

from expensebuddy.service.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    WrongTokenTypeError,
)
from expensebuddy.service.tokens import TokenService, TokenType, normalize_token
from expensebuddy.storage.models import Role, User


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    segment += "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment))


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="pat@example.com",
        password_hash="x",
        first_name="Pat",
        last_name="Doe",
        family_id="fam-1",
        role_in_family=Role.OWNER,
    )


class TestIssueAndVerify:
    def test_verify_returns_claims(self, tokens):
        token = tokens.issue(TokenType.EMAIL_VERIFICATION, {"sub": "u1", "email": "a@b.co"})
        claims = tokens.verify(token, TokenType.EMAIL_VERIFICATION)

        assert claims["sub"] == "u1"
        assert claims["type"] == "email_verification"
        assert claims["iss"] == tokens.settings.jwt_issuer
        assert claims["aud"] == tokens.settings.jwt_audience_verification
        assert claims["jti"]
        assert claims["exp"] > claims["iat"]

    def test_every_token_has_unique_jti(self, tokens):
        first = tokens.issue(TokenType.ACCESS, {"sub": "u1"})
        second = tokens.issue(TokenType.ACCESS, {"sub": "u1"})
        assert _payload(first)["jti"] != _payload(second)["jti"]

    def test_session_tokens_carry_family_claims(self, tokens, user):
        pair = tokens.issue_session_tokens(user)
        access = tokens.verify(pair.access_token, TokenType.ACCESS)
        refresh = tokens.verify(pair.refresh_token, TokenType.REFRESH)

        assert access["family_id"] == "fam-1"
        assert access["role_in_family"] == "OWNER"
        assert refresh["sub"] == "user-1"
        assert "email" not in refresh
        assert pair.token_type == "bearer"

    def test_session_tokens_without_family_have_no_role(self, tokens, user):
        user.family_id = None
        access = tokens.verify(tokens.issue_session_tokens(user).access_token, TokenType.ACCESS)
        assert access["family_id"] is None
        assert access["role_in_family"] is None


class TestTypeConfusion:
    def test_refresh_token_rejected_as_access(self, tokens, user):
        pair = tokens.issue_session_tokens(user)
        with pytest.raises(InvalidTokenError):
            tokens.verify(pair.refresh_token, TokenType.ACCESS)

    def test_reset_token_rejected_as_verification(self, tokens):
        # Same email secret, different purpose
        token = tokens.issue(TokenType.PASSWORD_RESET, {"sub": "u1"})
        with pytest.raises(WrongTokenTypeError) as excinfo:
            tokens.verify(token, TokenType.EMAIL_VERIFICATION)
        assert excinfo.value.error_code == "INVALID_TOKEN_TYPE"

    def test_invitation_rejected_as_email_change(self, tokens):
        token = tokens.issue(TokenType.FAMILY_INVITATION, {"family_id": "f"})
        with pytest.raises(WrongTokenTypeError):
            tokens.verify(token, TokenType.EMAIL_CHANGE)

    def test_email_token_rejected_as_access(self, tokens):
        token = tokens.issue(TokenType.EMAIL_VERIFICATION, {"sub": "u1"})
        with pytest.raises(InvalidTokenError):
            tokens.verify(token, TokenType.ACCESS)


class TestExpiryAndTampering:
    def test_expired_token_raises_expired(self, tokens):
        token = tokens.issue(TokenType.PASSWORD_RESET, {"sub": "u1"}, ttl=timedelta(minutes=-5))
        with pytest.raises(ExpiredTokenError) as excinfo:
            tokens.verify(token, TokenType.PASSWORD_RESET)
        assert excinfo.value.error_code == "TOKEN_EXPIRED"

    def test_leeway_accepts_just_expired_token(self, tokens):
        token = tokens.issue(TokenType.ACCESS, {"sub": "u1"}, ttl=timedelta(seconds=-5))
        assert tokens.verify(token, TokenType.ACCESS)["sub"] == "u1"

    def test_tampered_payload_rejected(self, tokens):
        token = tokens.issue(TokenType.ACCESS, {"sub": "u1"})
        header, payload, sig = token.split(".")
        claims = _payload(token)
        claims["sub"] = "attacker"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{forged}.{sig}", TokenType.ACCESS)

    def test_alg_none_rejected(self, tokens):
        token = tokens.issue(TokenType.ACCESS, {"sub": "u1"})
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{payload}.", TokenType.ACCESS)

    def test_foreign_secret_rejected(self, tokens, settings):
        other = TokenService(
            settings.model_copy(update={"jwt_access_secret": "another-secret-entirely-0123456789abcd"})
        )
        token = other.issue(TokenType.ACCESS, {"sub": "u1"})
        with pytest.raises(InvalidTokenError):
            tokens.verify(token, TokenType.ACCESS)

    def test_wrong_audience_rejected(self, tokens, settings):
        other = TokenService(settings.model_copy(update={"jwt_audience_app": "somebody-else"}))
        token = other.issue(TokenType.ACCESS, {"sub": "u1"})
        with pytest.raises(InvalidTokenError):
            tokens.verify(token, TokenType.ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
    def test_garbage_rejected(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            tokens.verify(garbage, TokenType.ACCESS)


class TestNormalizeToken:
    def test_strips_whitespace_and_zero_width(self):
        assert normalize_token("  ab\u200bc.d\ufeffe \n") == "abc.de"

    def test_none_becomes_empty(self):
        assert normalize_token(None) == ""


class TestBlacklist:
    async def test_blacklisted_token_reported(self, tokens, user):
        pair = tokens.issue_session_tokens(user)
        assert not await tokens.is_blacklisted(pair.access_token)

        await tokens.blacklist(pair.access_token, reason="user_logout")

        assert await tokens.is_blacklisted(pair.access_token)
        assert not await tokens.is_blacklisted(pair.refresh_token)

    async def test_blacklist_is_idempotent(self, tokens, user):
        pair = tokens.issue_session_tokens(user)
        await tokens.blacklist(pair.refresh_token)
        await tokens.blacklist(pair.refresh_token)
        assert await tokens.is_blacklisted(pair.refresh_token)

    async def test_unreadable_token_is_skipped(self, tokens):
        await tokens.blacklist("garbage")
        assert not await tokens.is_blacklisted("garbage")

    async def test_expired_entries_are_pruned(self, tokens):
        token = tokens.issue(TokenType.ACCESS, {"sub": "u1"}, ttl=timedelta(seconds=2))
        await tokens.blacklist(token)
        jti = _payload(token)["jti"]
        tokens._local_blacklist[jti] = time.time() - 1

        assert not await tokens.is_blacklisted(token)
        assert jti not in tokens._local_blacklist

    async def test_cache_failure_does_not_raise(self, settings, user):
        class BrokenCache:
            async def blacklist_token(self, jti, ttl_seconds, reason):
                raise ConnectionError("redis down")

            async def is_token_blacklisted(self, jti):
                raise ConnectionError("redis down")

        service = TokenService(settings, BrokenCache())
        pair = service.issue_session_tokens(user)
        await service.blacklist(pair.access_token)
        # The in-process record still answers
        assert await service.is_blacklisted(pair.access_token)
        other = service.issue_session_tokens(user)
        assert not await service.is_blacklisted(other.access_token)
