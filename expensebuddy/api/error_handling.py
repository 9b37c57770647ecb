"""Translation boundary between internal failures and the public error envelope.

Internal messages (``ServiceError.message``, exception text, stack traces) are
logged and never returned. Callers see only a stable upper-case code and the
fixed public message of the error class.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from expensebuddy.api.schemas import Envelope, ErrorBody
from expensebuddy.logging import get_correlation_id, get_logger
from expensebuddy.service.errors import ConflictError, ServerError, ServiceError
from expensebuddy.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_MESSAGE = ServerError.public_message

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "VALIDATION_ERROR",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_SERVER_ERROR")


def to_public_error(exc: BaseException) -> Tuple[int, ErrorBody]:
    """Map any exception to ``(status, body)`` safe to show a client."""
    if isinstance(exc, ServiceError):
        return exc.status_code, ErrorBody(
            code=exc.error_code,
            message=type(exc).public_message,
            details=exc.detail or None,
        )
    if isinstance(exc, ConstraintViolation):
        return ConflictError.status_code, ErrorBody(
            code=ConflictError.error_code, message=ConflictError.public_message
        )
    return ServerError.status_code, ErrorBody(
        code=ServerError.error_code, message=GENERIC_MESSAGE
    )


def _error_response(
    status_code: int,
    message: str,
    details: Optional[Any] = None,
    code: Optional[str] = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return _envelope_response(status_code, error_body)


def _envelope_response(status_code: int, body: ErrorBody) -> JSONResponse:
    envelope = Envelope(status="error", error=body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing handlers for domain, storage, and stray errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            internal_message=exc.message,
            detail=exc.detail,
        )
        status_code, body = to_public_error(exc)
        return _envelope_response(status_code, body)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            constraint=exc.constraint,
            internal_message=exc.message,
        )
        status_code, body = to_public_error(exc)
        return _envelope_response(status_code, body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(f["loc"]) for f in fields],
        )
        return _error_response(400, "Invalid input", fields, code="VALIDATION_ERROR")

    @app.exception_handler(HTTPException)
    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        # Envelope-shaped detail comes from routes._http_error
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=error_obj.get("code"),
            )
            return _error_response(
                exc.status_code,
                error_obj.get("message", GENERIC_MESSAGE),
                error_obj.get("details"),
                code=error_obj.get("code"),
            )
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                detail=str(exc.detail),
            )
            return _error_response(exc.status_code, GENERIC_MESSAGE)
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        status_code, body = to_public_error(exc)
        return _envelope_response(status_code, body)
