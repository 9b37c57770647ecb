from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
)

from expensebuddy.api.schemas import (
    AuthResponse,
    EmailChangeRequest,
    Envelope,
    FamilyCreateRequest,
    FamilyInviteRequest,
    FamilyListResponse,
    FamilyResponse,
    FamilyUpdateRequest,
    JoinByCodeRequest,
    JoinRequestCreate,
    JoinRequestDecision,
    JoinRequestListResponse,
    JoinRequestResponse,
    LoginRequest,
    LogoutRequest,
    MemberListResponse,
    MemberResponse,
    MemberRoleUpdate,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenRequest,
    TokenResponse,
    UserResponse,
)
from expensebuddy.logging import bind_request_context, get_correlation_id, get_logger
from expensebuddy.service.auth import AuthContext, AuthResult
from expensebuddy.service.runtime import check_rate_limit, get_runtime
from expensebuddy.storage.models import JoinRequestStatus

logger = get_logger(__name__)

async def _settle_outgoing_email(background_tasks: BackgroundTasks) -> None:
    """Finish emails a handler scheduled, after its response has been sent."""
    background_tasks.add_task(get_runtime().mailer.drain)


router = APIRouter(prefix="/v1", dependencies=[Depends(_settle_outgoing_email)])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data=None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit on ``key``.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limited", key_prefix=key.split(":", 1)[0])
        raise _http_error(
            "RATE_LIMITED", "Too many requests, please try again later", status_code=429
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    bind_request_context(user_id=principal.user_id, family_id=principal.family_id)
    return principal


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        **TokenResponse.from_pair(result.tokens).model_dump(),
        user=UserResponse.from_user(result.user),
    )


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account, optionally creating or joining a family.

    Returns session tokens. The verification email is best-effort and never
    fails registration. Rate limited per client address.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        middle_name=body.middle_name,
        family_name=body.family_name,
        family_description=body.family_description,
        invite_code=body.invite_code,
        invitation_token=body.invitation_token,
    )
    return _ok(_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: INVALID_CREDENTIALS, identical for unknown email and bad password
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    return _ok(_auth_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal.token, body.refresh_token if body else None)
    return _ok({"logged_out": True})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh_token(body.refresh_token)
    return _ok(TokenResponse.from_pair(pair))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_me(principal)
    return _ok(UserResponse.from_user(user))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest):
    runtime = get_runtime()
    await runtime.auth.verify_email(body.token)
    return _ok({"verified": True})


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(
    response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_resend:{principal.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.send_verification_email(principal.user_id)
    return _ok({"sent": True})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    # Same response whether or not the account exists
    await runtime.auth.request_password_reset(body.email)
    return _ok({"status": "sent"})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    # One global bucket for all reset-token guesses
    await _enforce_rate_limit(runtime, "reset:confirm", limit=5, window_seconds=300)
    await runtime.auth.reset_password(body.token, body.new_password)
    return _ok({"status": "reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(principal, body.current_password, body.new_password)
    return _ok({"status": "changed"})


@router.post("/auth/email/change", response_model=Envelope, tags=["auth"])
async def request_email_change(
    body: EmailChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.request_email_change(principal, body.new_email, body.current_password)
    return _ok({"status": "pending_confirmation"})


@router.post("/auth/email/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_change(
    body: TokenRequest, authorization: Optional[str] = Header(None)
):
    """Apply a confirmed email change.

    The link may be opened without a session. When a bearer token is
    presented it is revoked once the change commits.
    """
    runtime = get_runtime()
    session_token = None
    if authorization and authorization.lower().startswith("bearer "):
        session_token = authorization.split(" ", 1)[1]
    await runtime.auth.confirm_email_change(body.token, session_token=session_token)
    return _ok({"status": "changed"})


# -- families ------------------------------------------------------------------


@router.post("/families", response_model=Envelope, status_code=201, tags=["families"])
async def create_family(
    body: FamilyCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    family = await runtime.family.create_family(principal, body.name, body.description)
    return _ok(FamilyResponse.from_family(family, include_invite_code=True))


@router.get("/families/mine", response_model=Envelope, tags=["families"])
async def my_family(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    summary = await runtime.family.my_family(principal)
    if summary is None:
        return _ok(None)
    is_owner = summary.family.owner_id == principal.user_id
    return _ok(FamilyResponse.from_summary(summary, include_invite_code=is_owner))


@router.patch("/families/mine", response_model=Envelope, tags=["families"])
async def update_family(
    body: FamilyUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    family = await runtime.family.update_family(principal, body.name, body.description)
    return _ok(FamilyResponse.from_family(family, include_invite_code=True))


@router.post("/families/mine/invite-code", response_model=Envelope, tags=["families"])
async def regenerate_invite_code(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    family = await runtime.family.regenerate_invite_code(principal)
    return _ok(FamilyResponse.from_family(family, include_invite_code=True))


@router.get("/families/mine/members", response_model=Envelope, tags=["families"])
async def family_members(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    members = await runtime.family.family_members(principal)
    return _ok(MemberListResponse(items=[MemberResponse.from_user(m) for m in members]))


@router.delete(
    "/families/mine/members/{member_id}", response_model=Envelope, tags=["families"]
)
async def remove_member(
    member_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.family.remove_family_member(principal, member_id)
    return _ok({"removed": member_id})


@router.patch(
    "/families/mine/members/{member_id}", response_model=Envelope, tags=["families"]
)
async def update_member_role(
    body: MemberRoleUpdate,
    member_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    member = await runtime.family.update_member_role(principal, member_id, body.role)
    return _ok(MemberResponse.from_user(member))


@router.post("/families/mine/leave", response_model=Envelope, tags=["families"])
async def leave_family(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.family.leave_family(principal)
    return _ok({"left": True})


@router.post("/families/mine/invitations", response_model=Envelope, tags=["families"])
async def invite_to_family(
    body: FamilyInviteRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.family.invite_to_family(principal, body.email, body.role, body.message)
    return _ok({"invited": True})


@router.post("/families/invitations/accept", response_model=Envelope, tags=["families"])
async def accept_invitation(body: TokenRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.family.accept_family_invitation(principal, body.token)
    return _ok(UserResponse.from_user(user))


@router.post("/families/join", response_model=Envelope, tags=["families"])
async def join_by_code(body: JoinByCodeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.family.join_family_by_code(principal, body.invite_code)
    return _ok(UserResponse.from_user(user))


@router.get("/families/search", response_model=Envelope, tags=["families"])
async def search_families(
    q: str = Query(..., min_length=1, max_length=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    summaries = await runtime.family.search_families(q)
    return _ok(FamilyListResponse(items=[FamilyResponse.from_summary(s) for s in summaries]))


@router.post("/families/join-requests", response_model=Envelope, status_code=201, tags=["families"])
async def request_join(body: JoinRequestCreate, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    join_request = await runtime.family.request_join_family(
        principal, body.family_id, body.message
    )
    return _ok(JoinRequestResponse.from_request(join_request))


@router.get("/families/join-requests/incoming", response_model=Envelope, tags=["families"])
async def incoming_join_requests(
    status: Optional[JoinRequestStatus] = Query(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    requests = await runtime.family.incoming_join_requests(principal, status)
    return _ok(
        JoinRequestListResponse(items=[JoinRequestResponse.from_request(r) for r in requests])
    )


@router.get("/families/join-requests/mine", response_model=Envelope, tags=["families"])
async def my_join_requests(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    requests = await runtime.family.my_join_requests(principal)
    return _ok(
        JoinRequestListResponse(items=[JoinRequestResponse.from_request(r) for r in requests])
    )


@router.post(
    "/families/join-requests/{request_id}/respond", response_model=Envelope, tags=["families"]
)
async def respond_to_join_request(
    body: JoinRequestDecision,
    request_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    resolved = await runtime.family.respond_to_join_request(
        principal, request_id, body.response, body.message
    )
    return _ok(JoinRequestResponse.from_request(resolved))
