from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from expensebuddy.config import Settings
from expensebuddy.logging import get_logger
from expensebuddy.service.auth import AuthContext, validate_email_address
from expensebuddy.service.email import EmailDispatcher, EmailGateway, EmailKind
from expensebuddy.service.errors import (
    AccountDeactivatedError,
    AlreadyInFamilyError,
    AlreadyInOtherFamilyError,
    AlreadyMemberError,
    AlreadyProcessedError,
    DuplicateRequestError,
    FamilyNotFoundError,
    ForbiddenError,
    InvalidInviteCodeError,
    InvalidTokenError,
    JoinRequestNotFoundError,
    OwnerProtectedError,
    UserNotFoundError,
    ValidationError,
)
from expensebuddy.service.tokens import TokenService, TokenType, normalize_token
from expensebuddy.storage.common import (
    SEARCH_RESULT_LIMIT,
    FamilyStore,
    generate_invite_code,
    normalize_email,
)
from expensebuddy.storage.errors import ConstraintViolation
from expensebuddy.storage.models import (
    Family,
    FamilyJoinRequest,
    FamilySummary,
    JoinRequestStatus,
    JoinResponse,
    Role,
    User,
)

logger = get_logger(__name__)

MAX_FAMILY_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_MESSAGE_LENGTH = 500

_MANAGER_ROLES = (Role.OWNER, Role.ADMIN)


def _as_role(value: Union[Role, str]) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise ValidationError(f"unknown role {value!r}", detail={"field": "role"}) from exc


def _clean_message(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    message = message.strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError("message too long", detail={"field": "message"})
    return message or None


class FamilyService:
    """Family creation, invitations, join requests, and member management.

    Every operation reloads the caller's row instead of trusting token claims,
    so a membership change takes effect before the access token rotates.
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

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _invite_code_fields(self) -> Dict[str, Any]:
        return {
            "invite_code": generate_invite_code(),
            "invite_code_expires_at": self._now()
            + timedelta(days=self.settings.invite_code_ttl_days),
        }

    def _dispatch(self, kind: EmailKind, to: str, variables: Dict[str, Any]) -> None:
        self.mailer.submit(kind, to, variables)

    # -- lookups -------------------------------------------------------------

    def _load_caller(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise UserNotFoundError(f"user {ctx.user_id} not found")
        if not user.is_active:
            raise AccountDeactivatedError(f"user {ctx.user_id} is deactivated")
        return user

    def _caller_family(self, ctx: AuthContext) -> Tuple[User, Family]:
        user = self._load_caller(ctx)
        if not user.family_id:
            raise FamilyNotFoundError("caller has no family")
        family = self.store.get_family(user.family_id)
        if not family or not family.is_active:
            raise FamilyNotFoundError(f"family {user.family_id} missing or inactive")
        return user, family

    def _require_owner(self, ctx: AuthContext) -> Tuple[User, Family]:
        user, family = self._caller_family(ctx)
        if family.owner_id != user.id:
            raise ForbiddenError("only the family owner can do this")
        return user, family

    def _require_manager(self, ctx: AuthContext) -> Tuple[User, Family]:
        user, family = self._caller_family(ctx)
        if user.role_in_family not in _MANAGER_ROLES:
            raise ForbiddenError("owner or admin role required")
        return user, family

    def _member_of(self, family: Family, member_id: str) -> User:
        member = self.store.get_user(member_id)
        if not member or member.family_id != family.id:
            raise UserNotFoundError(f"user {member_id} is not in family {family.id}")
        return member

    def _summarize(self, family: Family) -> FamilySummary:
        owner = self.store.get_user(family.owner_id) if family.owner_id else None
        return FamilySummary(
            family=family,
            member_count=self.store.count_family_members(family.id),
            owner=owner,
        )

    def _validate_family_fields(
        self, name: Optional[str], description: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        if name is not None:
            name = name.strip()
            if not name or len(name) > MAX_FAMILY_NAME_LENGTH:
                raise ValidationError("family name must be 1-100 characters", detail={"field": "name"})
        if description is not None:
            description = description.strip()
            if len(description) > MAX_DESCRIPTION_LENGTH:
                raise ValidationError("description too long", detail={"field": "description"})
        return name, description

    # -- family lifecycle ----------------------------------------------------

    async def create_family(
        self, ctx: AuthContext, name: str, description: str = ""
    ) -> Family:
        name, description = self._validate_family_fields(name or "", description or "")
        user = self._load_caller(ctx)
        if user.family_id:
            raise AlreadyInFamilyError(f"user {user.id} already in {user.family_id}")
        family = self.store.create_family(
            name, description, owner_id=None, **self._invite_code_fields()
        )
        joined = self.store.update_user_if(
            user.id, {"family_id": None}, family_id=family.id, role_in_family=Role.OWNER
        )
        if joined is None:
            # Lost a race with another join; drop the never-visible family
            self.store.delete_family(family.id)
            raise AlreadyInFamilyError(f"user {user.id} joined a family concurrently")
        owned = self.store.assign_family_owner(family.id, user.id)
        self.logger.info("family_created", family_id=family.id, owner_id=user.id)
        return owned or family

    async def update_family(
        self,
        ctx: AuthContext,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Family:
        name, description = self._validate_family_fields(name, description)
        _, family = self._require_owner(ctx)
        patch: Dict[str, Any] = {}
        if name is not None:
            patch["name"] = name
        if description is not None:
            patch["description"] = description
        if not patch:
            return family
        updated = self.store.update_family(family.id, **patch)
        if not updated:
            raise FamilyNotFoundError(f"family {family.id} vanished during update")
        self.logger.info("family_updated", family_id=family.id, fields=sorted(patch))
        return updated

    async def regenerate_invite_code(self, ctx: AuthContext) -> Family:
        _, family = self._require_owner(ctx)
        updated = self.store.update_family(family.id, **self._invite_code_fields())
        if not updated:
            raise FamilyNotFoundError(f"family {family.id} vanished during update")
        self.logger.info("family_invite_code_regenerated", family_id=family.id)
        return updated

    # -- invitations and codes -----------------------------------------------

    async def invite_to_family(
        self,
        ctx: AuthContext,
        email: str,
        role: Union[Role, str] = Role.MEMBER,
        message: Optional[str] = None,
    ) -> bool:
        role = _as_role(role)
        # A family has exactly one owner; ownership is never granted by invitation
        if role == Role.OWNER:
            raise ValidationError("cannot invite with owner role", detail={"field": "role"})
        email = validate_email_address(email)
        message = _clean_message(message)
        inviter, family = self._require_manager(ctx)
        target = self.store.get_user_by_email(email)
        if target and target.family_id == family.id:
            raise AlreadyMemberError(f"user {target.id} already in family {family.id}")
        if target and target.family_id:
            raise AlreadyInOtherFamilyError(f"user {target.id} in another family")
        token = self.tokens.issue(
            TokenType.FAMILY_INVITATION,
            {
                "family_id": family.id,
                "family_name": family.name,
                "role": role.value,
                "invited_by": inviter.id,
                "invitee_email": email,
            },
        )
        self.logger.info(
            "family_invitation_sent", family_id=family.id, invited_by=inviter.id, role=role.value
        )
        self._dispatch(
            EmailKind.FAMILY_INVITATION,
            email,
            {
                "family_name": family.name,
                "inviter_name": inviter.full_name,
                "role": role.value,
                "message": message,
                "token": token,
            },
        )
        return True

    async def accept_family_invitation(self, ctx: AuthContext, token: str) -> User:
        claims = self.tokens.verify(normalize_token(token), TokenType.FAMILY_INVITATION)
        user = self._load_caller(ctx)
        if normalize_email(claims.get("invitee_email", "")) != user.email:
            raise InvalidTokenError("invitation addressed to a different email")
        family = self.store.get_family(str(claims.get("family_id")))
        if not family or not family.is_active:
            raise FamilyNotFoundError("invited family missing or inactive")
        if user.family_id == family.id:
            raise AlreadyMemberError(f"user {user.id} already in family {family.id}")
        if user.family_id:
            raise AlreadyInFamilyError(f"user {user.id} already in {user.family_id}")
        try:
            role = Role(claims.get("role", Role.MEMBER.value))
        except ValueError as exc:
            raise InvalidTokenError("invitation carries an unknown role") from exc
        if role == Role.OWNER:
            raise InvalidTokenError("invitation cannot grant ownership")
        return self._attach(user, family, role, source="invitation")

    async def join_family_by_code(self, ctx: AuthContext, invite_code: str) -> User:
        code = (invite_code or "").strip().upper()
        if not code:
            raise ValidationError("invite code required", detail={"field": "invite_code"})
        user = self._load_caller(ctx)
        if user.family_id:
            raise AlreadyInFamilyError(f"user {user.id} already in {user.family_id}")
        family = self.store.get_family_by_invite_code(code)
        if not family or not family.is_invite_code_valid(self._now()):
            raise InvalidInviteCodeError(f"invite code {code[:4]}... not usable")
        return self._attach(user, family, Role.MEMBER, source="invite_code")

    def _attach(self, user: User, family: Family, role: Role, *, source: str) -> User:
        updated = self.store.update_user_if(
            user.id, {"family_id": None}, family_id=family.id, role_in_family=role
        )
        if updated is None:
            raise AlreadyInFamilyError(f"user {user.id} joined a family concurrently")
        self.logger.info(
            "family_member_joined",
            family_id=family.id,
            user_id=user.id,
            role=role.value,
            source=source,
        )
        return updated

    # -- membership ----------------------------------------------------------

    async def leave_family(self, ctx: AuthContext) -> bool:
        user, family = self._caller_family(ctx)
        if family.owner_id == user.id or user.role_in_family == Role.OWNER:
            raise OwnerProtectedError("owner cannot leave the family")
        self._detach(user, family, reason="left")
        return True

    async def remove_family_member(self, ctx: AuthContext, member_id: str) -> bool:
        caller, family = self._require_owner(ctx)
        member = self._member_of(family, member_id)
        # Includes the owner naming themself
        if member.id == family.owner_id or member.role_in_family == Role.OWNER:
            raise OwnerProtectedError(f"refused to remove owner of family {family.id}")
        self._detach(member, family, reason="removed", actor_id=caller.id)
        return True

    def _detach(
        self, user: User, family: Family, *, reason: str, actor_id: Optional[str] = None
    ) -> None:
        updated = self.store.update_user_if(
            user.id, {"family_id": family.id}, family_id=None, role_in_family=Role.MEMBER
        )
        if updated is None:
            raise UserNotFoundError(f"user {user.id} left family {family.id} concurrently")
        self.logger.info(
            "family_member_detached",
            family_id=family.id,
            user_id=user.id,
            reason=reason,
            actor_id=actor_id,
        )

    async def update_member_role(
        self, ctx: AuthContext, member_id: str, role: Union[Role, str]
    ) -> User:
        role = _as_role(role)
        if role == Role.OWNER:
            raise ValidationError("ownership cannot be assigned", detail={"field": "role"})
        _, family = self._require_owner(ctx)
        member = self._member_of(family, member_id)
        if member.id == family.owner_id:
            raise OwnerProtectedError("owner role cannot be changed")
        updated = self.store.update_user_if(
            member.id, {"family_id": family.id}, role_in_family=role
        )
        if updated is None:
            raise UserNotFoundError(f"user {member.id} left family {family.id} concurrently")
        self.logger.info(
            "family_member_role_updated", family_id=family.id, user_id=member.id, role=role.value
        )
        return updated

    # -- join requests -------------------------------------------------------

    async def request_join_family(
        self, ctx: AuthContext, family_id: str, message: Optional[str] = None
    ) -> FamilyJoinRequest:
        message = _clean_message(message)
        user = self._load_caller(ctx)
        if user.family_id:
            raise AlreadyInFamilyError(f"user {user.id} already in {user.family_id}")
        family = self.store.get_family(family_id)
        if not family or not family.is_active or not family.owner_id:
            raise FamilyNotFoundError(f"family {family_id} missing or inactive")
        try:
            request = self.store.create_join_request(
                user.id, family.id, family.owner_id, message
            )
        except ConstraintViolation as exc:
            raise DuplicateRequestError(
                f"pending request exists for user {user.id} and family {family.id}"
            ) from exc
        self.logger.info(
            "join_request_created", request_id=request.id, family_id=family.id, user_id=user.id
        )
        owner = self.store.get_user(family.owner_id)
        if owner:
            self._dispatch(
                EmailKind.JOIN_REQUEST,
                owner.email,
                {
                    "owner_name": owner.first_name,
                    "requester_name": user.full_name,
                    "requester_email": user.email,
                    "family_name": family.name,
                    "message": message,
                },
            )
        return request

    async def respond_to_join_request(
        self,
        ctx: AuthContext,
        request_id: str,
        response: Union[JoinResponse, str],
        message: Optional[str] = None,
    ) -> FamilyJoinRequest:
        try:
            response = JoinResponse(response)
        except ValueError as exc:
            raise ValidationError(
                f"unknown response {response!r}", detail={"field": "response"}
            ) from exc
        message = _clean_message(message)
        request = self.store.get_join_request(request_id)
        if not request or not request.is_active:
            raise JoinRequestNotFoundError(f"join request {request_id} not found")
        family = self.store.get_family(request.family_id)
        if not family or family.owner_id != ctx.user_id:
            raise ForbiddenError("only the family owner can respond")
        if request.status != JoinRequestStatus.PENDING:
            raise AlreadyProcessedError(f"join request {request_id} is {request.status.value}")
        approve = response == JoinResponse.APPROVE
        requester = self.store.get_user(request.user_id)
        if approve and (not requester or not requester.is_active):
            raise UserNotFoundError(f"requester {request.user_id} missing or inactive")
        if approve and requester.family_id:
            raise AlreadyInOtherFamilyError(f"requester {requester.id} already in a family")

        # Membership lands before the request leaves PENDING, so an APPROVED
        # request always has its requester in the family
        if approve:
            joined = self.store.update_user_if(
                requester.id,
                {"family_id": None},
                family_id=family.id,
                role_in_family=Role.MEMBER,
            )
            if joined is None:
                self.logger.warning(
                    "join_request_membership_conflict",
                    request_id=request.id,
                    user_id=requester.id,
                )
                raise AlreadyInOtherFamilyError(
                    f"requester {requester.id} joined a family concurrently"
                )

        # Exactly one responder wins the PENDING -> terminal transition
        resolved = self.store.resolve_join_request(
            request.id,
            JoinRequestStatus.APPROVED if approve else JoinRequestStatus.REJECTED,
            response_message=message,
            responded_at=self._now(),
        )
        if resolved is None:
            if approve:
                self.store.update_user_if(
                    requester.id,
                    {"family_id": family.id},
                    family_id=None,
                    role_in_family=Role.MEMBER,
                )
                self.logger.info(
                    "join_request_membership_rolled_back",
                    request_id=request.id,
                    user_id=requester.id,
                )
            raise AlreadyProcessedError(f"join request {request_id} resolved concurrently")
        self.logger.info(
            "join_request_resolved",
            request_id=request.id,
            family_id=family.id,
            status=resolved.status.value,
        )
        if requester:
            self._dispatch(
                EmailKind.JOIN_RESPONSE,
                requester.email,
                {
                    "first_name": requester.first_name,
                    "family_name": family.name,
                    "approved": approve,
                    "message": message,
                },
            )
        return resolved

    # -- queries -------------------------------------------------------------

    async def search_families(self, term: str) -> List[FamilySummary]:
        term = (term or "").strip()
        if not term:
            return []
        families = self.store.search_families(term, SEARCH_RESULT_LIMIT)
        return [self._summarize(family) for family in families]

    async def incoming_join_requests(
        self, ctx: AuthContext, status: Optional[JoinRequestStatus] = None
    ) -> List[FamilyJoinRequest]:
        return self.store.list_join_requests(owner_id=ctx.user_id, status=status)

    async def my_join_requests(self, ctx: AuthContext) -> List[FamilyJoinRequest]:
        return self.store.list_join_requests(user_id=ctx.user_id)

    async def family_members(self, ctx: AuthContext) -> List[User]:
        _, family = self._require_owner(ctx)
        return self.store.list_family_members(family.id)

    async def my_family(self, ctx: AuthContext) -> Optional[FamilySummary]:
        user = self._load_caller(ctx)
        if not user.family_id:
            return None
        family = self.store.get_family(user.family_id)
        if not family:
            return None
        return self._summarize(family)
