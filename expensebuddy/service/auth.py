from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from expensebuddy.config import Settings
from expensebuddy.logging import get_logger
from expensebuddy.service.email import EmailDispatcher, EmailGateway, EmailKind
from expensebuddy.service.errors import (
    AccountDeactivatedError,
    AuthenticationError,
    EmailInUseError,
    ExpiredTokenError,
    FamilyNotFoundError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidInviteCodeError,
    InvalidTokenError,
    ServerError,
    StaleTokenError,
    TokenRevokedError,
    UserExistsError,
    UserNotFoundError,
    ValidationError,
)
from expensebuddy.service.tokens import TokenPair, TokenService, TokenType, normalize_token
from expensebuddy.storage.common import FamilyStore, generate_invite_code, normalize_email
from expensebuddy.storage.errors import ConstraintViolation
from expensebuddy.storage.models import Role, User

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


def validate_email_address(email: str, field: str = "email") -> str:
    """Canonical form of `email`, or ValidationError when it is not an address."""
    canonical = normalize_email(email)
    if not _EMAIL_RE.match(canonical) or len(canonical) > 254:
        raise ValidationError("invalid email address", detail={"field": field})
    return canonical


@dataclass(frozen=True)
class AuthContext:
    """The authenticated caller, resolved from a fresh user row."""

    user_id: str
    email: str
    family_id: Optional[str]
    role_in_family: Role
    token: Optional[str] = None

    @property
    def is_family_owner(self) -> bool:
        return self.family_id is not None and self.role_in_family == Role.OWNER


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Registration, login, and the email-token flows around an account.

    Account lifecycle: registered (unverified) -> verified, with password
    reset and email change as side channels driven by signed email links.
    Every email is a best-effort background send scheduled after the
    primary write; no operation waits on the relay.
    """

    def __init__(
        self,
        store: FamilyStore,
        tokens: TokenService,
        email: EmailGateway,
        settings: Settings,
        mailer: Optional[EmailDispatcher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.email = email
        self.settings = settings
        self.mailer = mailer or EmailDispatcher(
            email, timeout=settings.email_send_timeout_seconds
        )
        self.logger = logger
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        # Verified against for unknown emails so both login failures cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # -- validation helpers --------------------------------------------------

    def _validate_password(self, password: str, field: str = "password") -> None:
        if not isinstance(password, str) or not (
            MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH
        ):
            raise ValidationError(
                "password length out of range",
                detail={
                    "field": field,
                    "min_length": MIN_PASSWORD_LENGTH,
                    "max_length": MAX_PASSWORD_LENGTH,
                },
            )

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _load_active_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"user {user_id} not found")
        if not user.is_active:
            raise AccountDeactivatedError(f"user {user_id} is deactivated")
        return user

    def _dispatch(self, kind: EmailKind, to: str, variables: Dict[str, Any]) -> None:
        self.mailer.submit(kind, to, variables)

    # -- registration --------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: str,
        middle_name: str = "",
        family_name: Optional[str] = None,
        family_description: str = "",
        invite_code: Optional[str] = None,
        invitation_token: Optional[str] = None,
    ) -> AuthResult:
        email = validate_email_address(email)
        self._validate_password(password)
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        if not first_name or not last_name:
            raise ValidationError("first and last name are required", detail={"field": "name"})
        family_options = [opt for opt in (family_name, invite_code, invitation_token) if opt]
        if len(family_options) > 1:
            raise ValidationError(
                "choose one of family_name, invite_code, invitation_token",
                detail={"field": "family"},
            )
        if self.store.get_user_by_email(email):
            raise UserExistsError(f"email_hash={_email_hash(email)} already registered")

        family_id: Optional[str] = None
        role = Role.MEMBER
        ownerless_family_id: Optional[str] = None
        if invite_code:
            code = invite_code.strip().upper()
            family = self.store.get_family_by_invite_code(code)
            if not family or not family.is_invite_code_valid(self._now()):
                raise InvalidInviteCodeError(f"invite code {code[:4]}... not usable")
            family_id = family.id
        elif invitation_token:
            family_id, role = self._resolve_invitation(invitation_token, email)
        elif family_name and family_name.strip():
            # Phase one: the family exists without an owner until the user row does
            family = self.store.create_family(
                family_name.strip(),
                (family_description or "").strip(),
                owner_id=None,
                invite_code=generate_invite_code(),
                invite_code_expires_at=self._now()
                + timedelta(days=self.settings.invite_code_ttl_days),
            )
            ownerless_family_id = family_id = family.id
            role = Role.OWNER

        try:
            user = self.store.create_user(
                email,
                self._hash_password(password),
                first_name=first_name,
                last_name=last_name,
                middle_name=(middle_name or "").strip(),
                family_id=family_id,
                role_in_family=role,
            )
        except ConstraintViolation as exc:
            self._discard_ownerless_family(ownerless_family_id)
            raise UserExistsError(f"email_hash={_email_hash(email)} already registered") from exc
        except Exception:
            self._discard_ownerless_family(ownerless_family_id)
            raise

        if ownerless_family_id:
            # Phase two
            if not self.store.assign_family_owner(ownerless_family_id, user.id):
                self.logger.error(
                    "family_owner_assignment_failed",
                    family_id=ownerless_family_id,
                    user_id=user.id,
                )
                raise ServerError("owner assignment failed after user creation")

        self.logger.info(
            "user_registered",
            user_id=user.id,
            email_hash=_email_hash(email),
            family_id=family_id,
            role_in_family=role.value if family_id else None,
        )
        user = await self._issue_verification(user)
        return AuthResult(user=user, tokens=self.tokens.issue_session_tokens(user))

    def _resolve_invitation(self, raw_token: str, email: str) -> tuple[str, Role]:
        claims = self.tokens.verify(normalize_token(raw_token), TokenType.FAMILY_INVITATION)
        if normalize_email(claims.get("invitee_email", "")) != email:
            raise InvalidTokenError("invitation addressed to a different email")
        family = self.store.get_family(str(claims.get("family_id")))
        if not family or not family.is_active:
            raise FamilyNotFoundError("invited family no longer exists")
        try:
            role = Role(claims.get("role", Role.MEMBER.value))
        except ValueError as exc:
            raise InvalidTokenError("invitation carries an unknown role") from exc
        if role == Role.OWNER:
            raise InvalidTokenError("invitation cannot grant ownership")
        return family.id, role

    def _discard_ownerless_family(self, family_id: Optional[str]) -> None:
        if not family_id:
            return
        try:
            self.store.delete_family(family_id)
        except Exception as exc:
            self.logger.warning("ownerless_family_cleanup_failed", family_id=family_id, error=str(exc))

    # -- email verification --------------------------------------------------

    async def _issue_verification(self, user: User) -> User:
        token = self.tokens.issue(
            TokenType.EMAIL_VERIFICATION, {"sub": user.id, "email": user.email}
        )
        expires_at = self._now() + self.tokens.ttl_for(TokenType.EMAIL_VERIFICATION)
        updated = self.store.update_user(
            user.id,
            email_verification_token=token,
            email_verification_expires_at=expires_at,
        )
        self._dispatch(
            EmailKind.VERIFICATION,
            user.email,
            {"first_name": user.first_name, "token": token},
        )
        return updated or user

    async def send_verification_email(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"user {user_id} not found")
        if user.is_email_verified:
            return True
        await self._issue_verification(user)
        self.logger.info("email_verification_resent", user_id=user.id)
        return True

    async def verify_email(self, token: str) -> bool:
        token = normalize_token(token)
        claims = self.tokens.verify(token, TokenType.EMAIL_VERIFICATION)
        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            self.logger.warning("email_verification_missing_user", user_id=claims.get("sub"))
            raise InvalidTokenError("verification target missing")
        if user.is_email_verified:
            return True
        if user.email_verification_token != token:
            self.logger.warning(
                "email_verification_invalid_token", user_id=user.id, jti=claims.get("jti")
            )
            raise InvalidTokenError("verification token superseded")
        expires_at = user.email_verification_expires_at
        if expires_at and expires_at <= self._now():
            raise ExpiredTokenError("verification token expired")
        updated = self.store.update_user_if(
            user.id,
            {"email_verification_token": token},
            is_email_verified=True,
            email_verification_token=None,
            email_verification_expires_at=None,
        )
        if updated is None:
            current = self.store.get_user(user.id)
            if current and current.is_email_verified:
                return True
            raise InvalidTokenError("verification token superseded")
        self.logger.info("email_verified", user_id=user.id)
        return True

    # -- sessions ------------------------------------------------------------

    async def login(self, email: str, password: str) -> AuthResult:
        canonical = normalize_email(email)
        user = self.store.get_user_by_email(canonical)
        if not user:
            self.verify_password(self._dummy_hash, password or "")
            self.logger.info("login_failed", email_hash=_email_hash(canonical))
            raise InvalidCredentialsError()
        password_ok = self.verify_password(user.password_hash, password or "")
        if not password_ok or not user.is_active:
            self.logger.info(
                "login_failed", user_id=user.id, deactivated=not user.is_active
            )
            raise InvalidCredentialsError()
        updated = self.store.update_user(user.id, last_login_at=self._now()) or user
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=updated, tokens=self.tokens.issue_session_tokens(updated))

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """Revoke the presented tokens. Always succeeds from the caller's view."""
        await self.tokens.blacklist(normalize_token(access_token), reason="user_logout")
        if refresh_token:
            await self.tokens.blacklist(normalize_token(refresh_token), reason="user_logout")
        return True

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        token = normalize_token(refresh_token)
        if await self.tokens.is_blacklisted(token):
            raise TokenRevokedError("refresh token revoked")
        try:
            claims = self.tokens.verify(token, TokenType.REFRESH)
        except InvalidTokenError as exc:
            # Callers only branch on INVALID_TOKEN here
            raise InvalidTokenError(exc.message) from exc
        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active:
            raise UserNotFoundError("refresh token subject missing or inactive")
        pair = self.tokens.issue_session_tokens(user)
        await self.tokens.blacklist(token, reason="refresh_rotated")
        return pair

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        scheme, _, raw = (authorization or "").partition(" ")
        token = normalize_token(raw)
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.tokens.verify(token, TokenType.ACCESS)
        except InvalidTokenError as exc:
            raise AuthenticationError(exc.message) from exc
        if await self.tokens.is_blacklisted(token):
            raise TokenRevokedError("access token revoked")
        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active:
            raise AuthenticationError("token subject missing or inactive")
        return AuthContext(
            user_id=user.id,
            email=user.email,
            family_id=user.family_id,
            role_in_family=user.role_in_family,
            token=token,
        )

    async def get_me(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise UserNotFoundError(f"user {ctx.user_id} not found")
        return user

    # -- password ------------------------------------------------------------

    async def request_password_reset(self, email: str) -> bool:
        """Always True, whether or not the account exists."""
        canonical = normalize_email(email)
        user = self.store.get_user_by_email(canonical)
        if not user or not user.is_active:
            self.logger.info("password_reset_unknown_account", email_hash=_email_hash(canonical))
            return True
        token = self.tokens.issue(
            TokenType.PASSWORD_RESET, {"sub": user.id, "email": user.email}
        )
        self.store.update_user(
            user.id,
            password_reset_token=token,
            password_reset_expires_at=self._now()
            + self.tokens.ttl_for(TokenType.PASSWORD_RESET),
        )
        self.logger.info("password_reset_requested", email_hash=_email_hash(canonical))
        self._dispatch(
            EmailKind.PASSWORD_RESET,
            user.email,
            {"first_name": user.first_name, "token": token},
        )
        return True

    async def reset_password(self, token: str, new_password: str) -> bool:
        self._validate_password(new_password, field="new_password")
        token = normalize_token(token)
        claims = self.tokens.verify(token, TokenType.PASSWORD_RESET)
        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active or user.password_reset_token != token:
            self.logger.warning(
                "password_reset_invalid_token", user_id=claims.get("sub"), jti=claims.get("jti")
            )
            raise InvalidTokenError("reset token unknown or already used")
        expires_at = user.password_reset_expires_at
        if expires_at and expires_at <= self._now():
            raise ExpiredTokenError("reset token expired")
        updated = self.store.update_user_if(
            user.id,
            {"password_reset_token": token},
            password_hash=self._hash_password(new_password),
            password_reset_token=None,
            password_reset_expires_at=None,
        )
        if updated is None:
            raise InvalidTokenError("reset token already used")
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> bool:
        self._validate_password(new_password, field="new_password")
        user = self._load_active_user(ctx.user_id)
        if not self.verify_password(user.password_hash, current_password or ""):
            self.logger.info("password_change_rejected", user_id=user.id)
            raise IncorrectPasswordError()
        if current_password == new_password:
            raise ValidationError(
                "new password matches current", detail={"field": "new_password"}
            )
        self.store.update_user(user.id, password_hash=self._hash_password(new_password))
        self.logger.info("password_changed", user_id=user.id)
        return True

    # -- email change --------------------------------------------------------

    async def request_email_change(
        self, ctx: AuthContext, new_email: str, current_password: str
    ) -> bool:
        new_email = validate_email_address(new_email, field="new_email")
        user = self._load_active_user(ctx.user_id)
        # Re-check the password so a hijacked session cannot take over the account
        if not self.verify_password(user.password_hash, current_password or ""):
            raise IncorrectPasswordError()
        if new_email == user.email:
            raise ValidationError(
                "new email equals current email", detail={"field": "new_email"}
            )
        existing = self.store.get_user_by_email(new_email)
        if existing and existing.id != user.id:
            raise EmailInUseError(f"email_hash={_email_hash(new_email)} in use")
        token = self.tokens.issue(
            TokenType.EMAIL_CHANGE,
            {"sub": user.id, "current_email": user.email, "new_email": new_email},
        )
        self.logger.info(
            "email_change_requested",
            user_id=user.id,
            new_email_hash=_email_hash(new_email),
        )
        self._dispatch(
            EmailKind.EMAIL_CHANGE_NOTICE,
            user.email,
            {"first_name": user.first_name, "new_email": new_email},
        )
        self._dispatch(
            EmailKind.EMAIL_CHANGE_CONFIRMATION,
            new_email,
            {"first_name": user.first_name, "new_email": new_email, "token": token},
        )
        return True

    async def confirm_email_change(
        self, token: str, session_token: Optional[str] = None
    ) -> bool:
        token = normalize_token(token)
        claims = self.tokens.verify(token, TokenType.EMAIL_CHANGE)
        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active:
            raise InvalidTokenError("email change subject missing or inactive")
        current_email = normalize_email(claims.get("current_email", ""))
        new_email = normalize_email(claims.get("new_email", ""))
        if not current_email or not new_email:
            raise InvalidTokenError("email change token incomplete")
        if user.email != current_email:
            self.logger.warning("email_change_stale_token", user_id=user.id)
            raise StaleTokenError("account email changed since token issuance")
        existing = self.store.get_user_by_email(new_email)
        if existing and existing.id != user.id:
            raise EmailInUseError(f"email_hash={_email_hash(new_email)} in use")
        try:
            updated = self.store.update_user_if(
                user.id,
                {"email": current_email},
                email=new_email,
                is_email_verified=True,
                email_verification_token=None,
                email_verification_expires_at=None,
            )
        except ConstraintViolation as exc:
            raise EmailInUseError(f"email_hash={_email_hash(new_email)} in use") from exc
        if updated is None:
            raise StaleTokenError("account email changed concurrently")
        if session_token:
            await self.tokens.blacklist(normalize_token(session_token), reason="email_changed")
        self.logger.info(
            "email_changed", user_id=user.id, new_email_hash=_email_hash(new_email)
        )
        return True
