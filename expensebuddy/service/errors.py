from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to public error codes.

    ``message`` is internal detail for the logs. What reaches a caller is the
    class-level ``public_message`` plus the stable ``error_code``; the API
    translation boundary never forwards ``message``. Generic codes:

    - VALIDATION_ERROR (400)
    - UNAUTHENTICATED (401)
    - FORBIDDEN (403)
    - NOT_FOUND (404)
    - CONFLICT (409)
    - RATE_LIMITED (429)
    - INTERNAL_SERVER_ERROR (500)

    Subclasses refine the code for cases the client branches on.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    public_message: str = "An error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.public_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"
    public_message = "Invalid input"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHENTICATED"
    public_message = "You must be logged in to perform this action"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    public_message = "You do not have permission to perform this action"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    public_message = "Resource not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"
    public_message = "Resource already exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"
    public_message = "Too many requests, please try again later"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"
    public_message = "An error occurred"


# Credentials and accounts


class InvalidCredentialsError(AuthenticationError):
    # Same shape for unknown email and bad password
    error_code = "INVALID_CREDENTIALS"
    public_message = "Invalid email or password"


class IncorrectPasswordError(ValidationError):
    """Re-entered current password did not match.

    Kept at 400 so the client does not treat it as a dead session.
    """
    error_code = "INCORRECT_PASSWORD"
    public_message = "Current password is incorrect"


class AccountDeactivatedError(ForbiddenError):
    error_code = "ACCOUNT_DEACTIVATED"
    public_message = "Account is deactivated"


class UserExistsError(ConflictError):
    error_code = "USER_EXISTS"
    public_message = "User with this email already exists"


class EmailInUseError(ConflictError):
    error_code = "EMAIL_IN_USE"
    public_message = "This email address is already in use"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"
    public_message = "User not found"


# Tokens


class InvalidTokenError(ValidationError):
    error_code = "INVALID_TOKEN"
    public_message = "Invalid or expired token"


class ExpiredTokenError(InvalidTokenError):
    error_code = "TOKEN_EXPIRED"


class WrongTokenTypeError(InvalidTokenError):
    error_code = "INVALID_TOKEN_TYPE"
    public_message = "Invalid token type"


class StaleTokenError(InvalidTokenError):
    """The account changed after the token was minted."""
    error_code = "STALE_TOKEN"
    public_message = "This link is no longer valid"


class TokenRevokedError(AuthenticationError):
    error_code = "TOKEN_REVOKED"
    public_message = "Token has been revoked"


# Families and membership


class FamilyNotFoundError(NotFoundError):
    error_code = "FAMILY_NOT_FOUND"
    public_message = "Family not found"


class JoinRequestNotFoundError(NotFoundError):
    error_code = "REQUEST_NOT_FOUND"
    public_message = "Join request not found"


class InvalidInviteCodeError(ValidationError):
    error_code = "INVALID_INVITE_CODE"
    public_message = "Invalid or expired invite code"


class AlreadyMemberError(ConflictError):
    error_code = "ALREADY_MEMBER"
    public_message = "User is already a member of this family"


class AlreadyInOtherFamilyError(ConflictError):
    error_code = "ALREADY_IN_OTHER_FAMILY"
    public_message = "User is already a member of another family"


class AlreadyInFamilyError(ConflictError):
    error_code = "USER_ALREADY_IN_FAMILY"
    public_message = "You are already a member of a family"


class DuplicateRequestError(ConflictError):
    error_code = "DUPLICATE_FAMILY_REQUEST"
    public_message = "You already have a pending request for this family"


class AlreadyProcessedError(ConflictError):
    error_code = "REQUEST_ALREADY_PROCESSED"
    public_message = "This request has already been processed"


class OwnerProtectedError(ForbiddenError):
    """Operation would leave a family without its owner."""
    error_code = "OWNER_PROTECTED"
    public_message = "The family owner cannot be removed or demoted"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "IncorrectPasswordError",
    "AccountDeactivatedError",
    "UserExistsError",
    "EmailInUseError",
    "UserNotFoundError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "WrongTokenTypeError",
    "StaleTokenError",
    "TokenRevokedError",
    "FamilyNotFoundError",
    "JoinRequestNotFoundError",
    "InvalidInviteCodeError",
    "AlreadyMemberError",
    "AlreadyInOtherFamilyError",
    "AlreadyInFamilyError",
    "DuplicateRequestError",
    "AlreadyProcessedError",
    "OwnerProtectedError",
]
