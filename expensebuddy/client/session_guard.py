"""Client-side interceptor that keeps an httpx session consistent with the server.

The guard attaches the stored access token to outgoing requests and turns
error envelopes into UX actions: authentication failures force a single
logout plus a delayed redirect to the login page, permission errors only show
a toast, and server or network failures show a retryable toast.

It runs on one event loop. The redirect is a cancellable ``call_later`` timer,
so a second logout while one is pending is a no-op.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

import httpx

from expensebuddy.logging import get_logger

logger = get_logger(__name__)

LOGIN_PATH = "/login"
AUTH_PATH_PREFIXES = ("/login", "/register", "/auth/")


class TokenStorage(Protocol):
    def get_access_token(self) -> Optional[str]: ...

    def get_refresh_token(self) -> Optional[str]: ...

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None: ...

    def clear(self) -> None: ...


class InMemoryTokenStorage:
    def __init__(
        self, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def get_refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        self._access_token = access_token
        if refresh_token is not None:
            self._refresh_token = refresh_token

    def clear(self) -> None:
        self._access_token = None
        self._refresh_token = None


class ErrorAction(str, Enum):
    NONE = "none"
    LOGOUT = "logout"
    SHOW_ERROR = "show_error"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class Toast:
    level: str
    message: str
    duration: float
    retryable: bool = False


SESSION_EXPIRED_TOAST = Toast("warning", "Your session has expired. Please log in again.", 4.0)
FORBIDDEN_TOAST = Toast("error", "You do not have permission to perform this action.", 5.0)
SERVER_ERROR_TOAST = Toast(
    "error", "Something went wrong on our side. Please try again.", 6.0, retryable=True
)
NETWORK_ERROR_TOAST = Toast(
    "error", "Unable to reach the server. Check your connection and retry.", 6.0, retryable=True
)


def classify_response(
    status_code: int, error_code: Optional[str] = None, *, authenticated: bool = True
) -> ErrorAction:
    """Map a response to the action the client should take.

    A 401 on a request that carried no token (a failed login, say) is an
    ordinary error, not a dead session.
    """
    if error_code == "UNAUTHENTICATED" or status_code == 401:
        return ErrorAction.LOGOUT if authenticated else ErrorAction.SHOW_ERROR
    if error_code == "FORBIDDEN" or status_code == 403:
        return ErrorAction.SHOW_ERROR
    if status_code >= 500:
        return ErrorAction.RETRYABLE
    if status_code >= 400:
        return ErrorAction.SHOW_ERROR
    return ErrorAction.NONE


def _extract_error(response: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("code"), error.get("message")
    return None, None


class SessionGuard:
    def __init__(
        self,
        storage: TokenStorage,
        *,
        logout_handler: Optional[Callable[[], Any]] = None,
        notify: Optional[Callable[[Toast], Any]] = None,
        navigate: Optional[Callable[[str], Any]] = None,
        current_path: Optional[Callable[[], str]] = None,
        redirect_delay: float = 1.5,
        login_path: str = LOGIN_PATH,
    ) -> None:
        self.storage = storage
        self._logout_handler = logout_handler
        self._notify = notify
        self._navigate = navigate
        self._current_path = current_path
        self.redirect_delay = redirect_delay
        self.login_path = login_path
        self._logged_out = False
        self._redirect_handle: Optional[asyncio.TimerHandle] = None

    # -- logout handler slot -------------------------------------------------

    def set_logout_handler(self, handler: Callable[[], Any]) -> None:
        self._logout_handler = handler

    def clear_logout_handler(self, handler: Optional[Callable[[], Any]] = None) -> None:
        """Detach the handler; with ``handler`` given, only if it is still the current one."""
        if handler is None or handler is self._logout_handler:
            self._logout_handler = None

    @property
    def logged_out(self) -> bool:
        return self._logged_out

    @property
    def redirect_pending(self) -> bool:
        return self._redirect_handle is not None

    # -- hooks ---------------------------------------------------------------

    async def on_request(self, request: httpx.Request) -> None:
        token = self.storage.get_access_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

    async def on_response(self, response: httpx.Response) -> ErrorAction:
        if response.status_code < 400:
            return ErrorAction.NONE
        await response.aread()
        code, message = _extract_error(response)
        authenticated = "authorization" in response.request.headers
        action = classify_response(response.status_code, code, authenticated=authenticated)
        logger.info(
            "session_guard_error_response",
            status_code=response.status_code,
            error_code=code,
            action=action.value,
        )
        if action == ErrorAction.LOGOUT:
            self.force_logout()
        elif action == ErrorAction.RETRYABLE:
            self._show(SERVER_ERROR_TOAST)
        elif action == ErrorAction.SHOW_ERROR:
            if code == "FORBIDDEN" or response.status_code == 403:
                self._show(FORBIDDEN_TOAST)
            else:
                self._show(Toast("error", message or "An error occurred", 5.0))
        return action

    def handle_transport_error(self, exc: Exception) -> Toast:
        logger.warning("session_guard_transport_error", error_type=type(exc).__name__)
        self._show(NETWORK_ERROR_TOAST)
        return NETWORK_ERROR_TOAST

    # -- logout --------------------------------------------------------------

    def force_logout(self) -> bool:
        """Clear the session once; later calls until ``reset`` do nothing."""
        if self._logged_out:
            return False
        self._logged_out = True
        self.storage.clear()
        handler = self._logout_handler
        if handler is not None:
            try:
                handler()
            except Exception as exc:
                logger.warning("logout_handler_failed", error=str(exc))
        self._show(SESSION_EXPIRED_TOAST)
        if not self._on_auth_page():
            self._schedule_redirect()
        return True

    def reset(self) -> None:
        """Re-arm after a fresh login."""
        self.cancel_pending_redirect()
        self._logged_out = False

    def cancel_pending_redirect(self) -> bool:
        if self._redirect_handle is None:
            return False
        self._redirect_handle.cancel()
        self._redirect_handle = None
        return True

    def _on_auth_page(self) -> bool:
        if self._current_path is None:
            return False
        path = self._current_path() or ""
        return path == self.login_path or path.startswith(AUTH_PATH_PREFIXES)

    def _schedule_redirect(self) -> None:
        if self._redirect_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to defer on; redirect right away
            self._redirect()
            return
        self._redirect_handle = loop.call_later(self.redirect_delay, self._redirect)

    def _redirect(self) -> None:
        self._redirect_handle = None
        if self._navigate is not None:
            self._navigate(self.login_path)

    def _show(self, toast: Toast) -> None:
        if self._notify is not None:
            self._notify(toast)

    # -- client --------------------------------------------------------------

    def build_client(self, **kwargs: Any) -> httpx.AsyncClient:
        hooks = dict(kwargs.pop("event_hooks", None) or {})
        hooks["request"] = [*hooks.get("request", []), self.on_request]
        hooks["response"] = [*hooks.get("response", []), self.on_response]
        return httpx.AsyncClient(event_hooks=hooks, **kwargs)

    async def send(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """``client.request`` that reports network failures before re-raising."""
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            self.handle_transport_error(exc)
            raise
