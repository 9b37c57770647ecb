from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from expensebuddy.config import Settings
from expensebuddy.logging import get_logger
from expensebuddy.service.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    WrongTokenTypeError,
)
from expensebuddy.storage.models import User
from expensebuddy.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Characters mail clients and copy/paste tend to smuggle into link tokens
_INVISIBLE_CHARS = "\u200b\u200c\u200d\u2060\ufeff\u00a0"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"
    FAMILY_INVITATION = "family_invitation"


@dataclass(frozen=True)
class _TokenPolicy:
    secret: str
    audience: str
    ttl: timedelta


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"


def normalize_token(raw: Optional[str]) -> str:
    """Strip whitespace and invisible characters picked up from email links."""
    if not raw:
        return ""
    return "".join(ch for ch in raw.strip() if ch not in _INVISIBLE_CHARS and not ch.isspace())


class TokenService:
    """Issues, verifies, and revokes signed HS256 tokens.

    Every token carries a ``type`` claim and is signed with the secret of its
    purpose: access, refresh, or email-link. A token minted for one purpose is
    rejected anywhere another type is expected, even when its signature
    checks out.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.logger = logger
        self._leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)
        minutes = lambda value: timedelta(minutes=value)  # noqa: E731
        self._policies: Dict[TokenType, _TokenPolicy] = {
            TokenType.ACCESS: _TokenPolicy(
                settings.jwt_access_secret,
                settings.jwt_audience_app,
                minutes(settings.access_token_ttl_minutes),
            ),
            TokenType.REFRESH: _TokenPolicy(
                settings.jwt_refresh_secret,
                settings.jwt_audience_app,
                minutes(settings.refresh_token_ttl_minutes),
            ),
            TokenType.EMAIL_VERIFICATION: _TokenPolicy(
                settings.jwt_email_secret,
                settings.jwt_audience_verification,
                minutes(settings.email_verification_ttl_minutes),
            ),
            TokenType.PASSWORD_RESET: _TokenPolicy(
                settings.jwt_email_secret,
                settings.jwt_audience_password_reset,
                minutes(settings.password_reset_ttl_minutes),
            ),
            TokenType.EMAIL_CHANGE: _TokenPolicy(
                settings.jwt_email_secret,
                settings.jwt_audience_email_change,
                minutes(settings.email_change_ttl_minutes),
            ),
            TokenType.FAMILY_INVITATION: _TokenPolicy(
                settings.jwt_email_secret,
                settings.jwt_audience_invitation,
                minutes(settings.family_invitation_ttl_minutes),
            ),
        }
        # jti -> exp timestamp; used when Redis is unavailable
        self._local_blacklist: Dict[str, float] = {}
        self._blacklist_lock = threading.Lock()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def ttl_for(self, token_type: TokenType) -> timedelta:
        return self._policies[token_type].ttl

    # -- issue / verify ------------------------------------------------------

    def issue(
        self,
        token_type: TokenType,
        claims: Dict[str, Any],
        ttl: Optional[timedelta] = None,
    ) -> str:
        policy = self._policies[token_type]
        now = self._now()
        expires_at = now + (ttl if ttl is not None else policy.ttl)
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": policy.audience,
            "type": token_type.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, policy.secret)

    def verify(self, token: str, expected_type: TokenType) -> Dict[str, Any]:
        """Return the claims of a valid token of ``expected_type``.

        Raises:
            InvalidTokenError: malformed, bad signature, issuer or audience
            WrongTokenTypeError: signed correctly but minted for another purpose
            ExpiredTokenError: past ``exp`` beyond the clock-skew leeway
        """
        policy = self._policies[expected_type]
        payload = self._decode_jwt(token, policy.secret)
        if payload is None:
            raise InvalidTokenError("token signature or encoding invalid")
        token_type = payload.get("type")
        if token_type != expected_type.value:
            self.logger.warning(
                "token_type_mismatch", expected=expected_type.value, actual=token_type
            )
            raise WrongTokenTypeError(
                f"expected {expected_type.value} token, got {token_type}"
            )
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("token issuer mismatch")
        aud = payload.get("aud")
        valid_aud = aud == policy.audience or (
            isinstance(aud, list) and policy.audience in aud
        )
        if not valid_aud:
            raise InvalidTokenError("token audience mismatch")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("token missing exp")
        if exp_ts <= time.time() - self._leeway.total_seconds():
            raise ExpiredTokenError(f"{expected_type.value} token expired")
        return payload

    def issue_session_tokens(self, user: User) -> TokenPair:
        claims = {
            "sub": user.id,
            "email": user.email,
            "family_id": user.family_id,
            "role_in_family": user.role_in_family.value if user.family_id else None,
        }
        access_ttl = self.ttl_for(TokenType.ACCESS)
        return TokenPair(
            access_token=self.issue(TokenType.ACCESS, claims),
            refresh_token=self.issue(TokenType.REFRESH, {"sub": user.id}),
            expires_at=self._now() + access_ttl,
        )

    # -- blacklist -----------------------------------------------------------

    async def blacklist(self, token: str, reason: str = "revoked") -> None:
        """Revoke ``token`` until its natural expiry.

        Idempotent and best-effort: failures are logged, never raised, so a
        logout or email change is not undone by a cache outage.
        """
        claims = self._read_claims(token)
        if not claims or not claims.get("jti"):
            self.logger.info("token_blacklist_skipped_unreadable")
            return
        jti = str(claims["jti"])
        try:
            exp_ts = float(claims.get("exp"))
        except (TypeError, ValueError):
            return
        ttl_seconds = int(exp_ts - time.time())
        if ttl_seconds <= 0:
            # Already expired; verification rejects it without a record
            return
        with self._blacklist_lock:
            self._local_blacklist[jti] = exp_ts
        if self.cache:
            try:
                await self.cache.blacklist_token(jti, ttl_seconds, reason)
            except Exception as exc:
                self.logger.warning(
                    "token_blacklist_write_failed", jti=jti, reason=reason, error=str(exc)
                )
                return
        self.logger.info("token_blacklisted", jti=jti, reason=reason, ttl=ttl_seconds)

    async def is_blacklisted(self, token: str) -> bool:
        claims = self._read_claims(token)
        if not claims or not claims.get("jti"):
            return False
        jti = str(claims["jti"])
        now = time.time()
        with self._blacklist_lock:
            self._local_blacklist = {
                key: exp for key, exp in self._local_blacklist.items() if exp > now
            }
            if jti in self._local_blacklist:
                return True
        if self.cache:
            try:
                return await self.cache.is_token_blacklisted(jti)
            except Exception as exc:
                # An outage reads as not revoked
                self.logger.warning("token_blacklist_check_failed", jti=jti, error=str(exc))
        return False

    # -- encoding ------------------------------------------------------------

    def _read_claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Claims of a token signed by any of our secrets, ignoring type and expiry."""
        for secret in {policy.secret for policy in self._policies.values()}:
            payload = self._decode_jwt(token, secret)
            if payload is not None:
                return payload
        return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[Dict[str, Any]]:
        """Signature-checked payload, or None. Does not look at claims."""
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            return None
        # Reject alg confusion (e.g. "none") before touching the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
