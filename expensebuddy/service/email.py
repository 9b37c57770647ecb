from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple
from urllib.parse import quote

from expensebuddy.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailKind(str, Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    FAMILY_INVITATION = "family_invitation"
    JOIN_REQUEST = "join_request"
    JOIN_RESPONSE = "join_response"
    EMAIL_CHANGE_NOTICE = "email_change_notice"
    EMAIL_CHANGE_CONFIRMATION = "email_change_confirmation"


class EmailDispatchError(Exception):
    """Raised by a gateway when a message could not be handed to the relay."""

    def __init__(self, kind: EmailKind, message: str):
        super().__init__(message)
        self.kind = kind


class EmailGateway(Protocol):
    def send(self, kind: EmailKind, to: str, variables: Mapping[str, Any]) -> None: ...


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    kind: EmailKind
    error: Optional[str] = None


@dataclass
class _Message:
    subject: str
    heading: str
    paragraphs: List[str]
    button: Optional[Tuple[str, str]] = None  # (label, url)


_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f855a; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
{body}
        <div class="footer">
            <p>{app_name}</p>
{footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - One template per ``EmailKind``, each with HTML and plain-text parts
    - Links into the web client for every tokenised action
    - Fallback to logging when not configured (dev mode)

    ``send`` raises ``EmailDispatchError`` on failure; callers that must not
    fail on email go through ``send_best_effort``.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Expense Buddy",
        client_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.client_url = (client_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout
        # Most recent rendered messages in dev mode, newest last
        self.outbox: List[Dict[str, str]] = []

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    # -- links ---------------------------------------------------------------

    def verification_link(self, token: str) -> str:
        return f"{self.client_url}/auth/verify-email?token={quote(token)}"

    def password_reset_link(self, token: str) -> str:
        return f"{self.client_url}/auth/reset/{quote(token)}"

    def invitation_link(self, token: str) -> str:
        return f"{self.client_url}/auth/family-invitation?token={quote(token)}"

    def email_change_link(self, token: str) -> str:
        return f"{self.client_url}/auth/confirm-email-change?token={quote(token)}"

    # -- rendering -----------------------------------------------------------

    def _render(self, kind: EmailKind, v: Mapping[str, Any]) -> _Message:
        name = v.get("first_name") or "there"
        if kind == EmailKind.VERIFICATION:
            return _Message(
                "Verify your Expense Buddy email",
                "Verify your email",
                [
                    f"Hi {name}, thanks for signing up!",
                    "Please verify your email address by clicking the button below.",
                    "This link will expire in 24 hours.",
                ],
                ("Verify Email", self.verification_link(v["token"])),
            )
        if kind == EmailKind.PASSWORD_RESET:
            return _Message(
                "Reset your Expense Buddy password",
                "Reset your password",
                [
                    f"Hi {name}, we received a request to reset your password.",
                    "This link will expire in 1 hour.",
                    "If you didn't request this, you can safely ignore this email.",
                ],
                ("Reset Password", self.password_reset_link(v["token"])),
            )
        if kind == EmailKind.FAMILY_INVITATION:
            paragraphs = [
                f"{v.get('inviter_name') or 'A family owner'} invited you to join "
                f"{v['family_name']} as {str(v.get('role', 'MEMBER')).lower()}.",
            ]
            if v.get("message"):
                paragraphs.append(f"Message: {v['message']}")
            paragraphs.append("This invitation will expire in 24 hours.")
            return _Message(
                f"You're invited to join {v['family_name']}",
                "Family invitation",
                paragraphs,
                ("Accept Invitation", self.invitation_link(v["token"])),
            )
        if kind == EmailKind.JOIN_REQUEST:
            paragraphs = [
                f"Hi {v.get('owner_name') or 'there'}, {v['requester_name']} "
                f"({v['requester_email']}) asked to join {v['family_name']}.",
            ]
            if v.get("message"):
                paragraphs.append(f"Message: {v['message']}")
            paragraphs.append("Open Expense Buddy to approve or reject the request.")
            return _Message(
                f"New request to join {v['family_name']}",
                "New join request",
                paragraphs,
                ("Review Request", f"{self.client_url}/family/requests"),
            )
        if kind == EmailKind.JOIN_RESPONSE:
            approved = bool(v.get("approved"))
            outcome = "approved" if approved else "declined"
            paragraphs = [
                f"Hi {name}, your request to join {v['family_name']} was {outcome}.",
            ]
            if v.get("message"):
                paragraphs.append(f"Message from the owner: {v['message']}")
            return _Message(
                f"Your request to join {v['family_name']} was {outcome}",
                "Join request approved" if approved else "Join request declined",
                paragraphs,
                ("Open Expense Buddy", f"{self.client_url}/family") if approved else None,
            )
        if kind == EmailKind.EMAIL_CHANGE_NOTICE:
            return _Message(
                "Your Expense Buddy email is changing",
                "Email change requested",
                [
                    f"Hi {name}, a request was made to change your account email "
                    f"to {redact_email(v['new_email'])}.",
                    "The change takes effect once the new address is confirmed.",
                    "If you didn't make this request, change your password immediately.",
                ],
            )
        if kind == EmailKind.EMAIL_CHANGE_CONFIRMATION:
            return _Message(
                "Confirm your new Expense Buddy email",
                "Confirm your new email",
                [
                    f"Hi {name}, please confirm that {v['new_email']} should become "
                    "your account email.",
                    "This link will expire in 1 hour.",
                ],
                ("Confirm Email", self.email_change_link(v["token"])),
            )
        raise ValueError(f"unknown email kind: {kind}")

    def render(self, kind: EmailKind, variables: Mapping[str, Any]) -> Tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for ``kind``."""
        try:
            message = self._render(kind, variables)
        except KeyError as exc:
            raise EmailDispatchError(kind, f"missing template variable {exc}") from exc
        body_lines = [f"        <p>{html.escape(p)}</p>" for p in message.paragraphs]
        footer_lines: List[str] = []
        text_lines = [message.heading, ""]
        text_lines.extend(p for p in message.paragraphs)
        if message.button:
            label, url = message.button
            safe_url = html.escape(url, quote=True)
            body_lines.insert(
                1,
                f'        <p style="margin: 30px 0;"><a href="{safe_url}" class="button">'
                f"{html.escape(label)}</a></p>",
            )
            footer_lines.append(
                f"            <p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            )
            text_lines.extend(["", url])
        text_lines.extend(["", "---", self.from_name])
        html_body = _HTML_LAYOUT.format(
            heading=html.escape(message.heading),
            body="\n".join(body_lines),
            app_name=html.escape(self.from_name),
            footer="\n".join(footer_lines),
        )
        return message.subject, html_body, "\n".join(text_lines) + "\n"

    # -- delivery ------------------------------------------------------------

    def send(self, kind: EmailKind, to: str, variables: Mapping[str, Any]) -> None:
        subject, html_body, text_body = self.render(kind, variables)
        self._send_email(kind, to, subject, html_body, text_body)

    def _send_email(
        self,
        kind: EmailKind,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                kind=kind.value,
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            self.outbox.append({"kind": kind.value, "to": to_email, "subject": subject, "text": text_body})
            del self.outbox[:-50]
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDispatchError(kind, "smtp authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            raise EmailDispatchError(kind, "recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDispatchError(kind, f"smtp error: {type(e).__name__}") from e
        except (ssl.SSLError, OSError) as e:
            # Covers connection refused and socket timeouts
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDispatchError(kind, f"connection failed: {type(e).__name__}") from e

        logger.info("email_sent", kind=kind.value, to=redact_email(to_email), subject=subject)


async def send_best_effort(
    gateway: EmailGateway,
    kind: EmailKind,
    to: str,
    variables: Mapping[str, Any],
    *,
    timeout: float = 10.0,
) -> DispatchResult:
    """Send an email whose failure must never fail the surrounding operation.

    The blocking gateway call runs in a worker thread and is bounded by
    ``timeout``. Every failure is logged and returned as a ``DispatchResult``.
    """
    try:
        await asyncio.wait_for(
            asyncio.to_thread(gateway.send, kind, to, variables), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning("email_dispatch_timeout", kind=kind.value, to=redact_email(to), timeout=timeout)
        return DispatchResult(ok=False, kind=kind, error="timeout")
    except Exception as exc:
        logger.warning(
            "email_dispatch_failed",
            kind=kind.value,
            to=redact_email(to),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return DispatchResult(ok=False, kind=kind, error=str(exc) or type(exc).__name__)
    return DispatchResult(ok=True, kind=kind)


class EmailDispatcher:
    """Runs ``send_best_effort`` as background tasks off the request path.

    ``submit`` returns as soon as the send is scheduled, so a caller never
    waits on the relay and its latency does not depend on whether an email
    went out. Tasks are kept until they finish; ``drain`` waits for the ones
    still in flight on the running loop.
    """

    def __init__(self, gateway: EmailGateway, *, timeout: float = 10.0) -> None:
        self.gateway = gateway
        self.timeout = timeout
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(
        self, kind: EmailKind, to: str, variables: Mapping[str, Any]
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            send_best_effort(self.gateway, kind, to, dict(variables), timeout=self.timeout)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.debug("email_dispatch_scheduled", kind=kind.value, to=redact_email(to))
        return task

    async def drain(self) -> List[DispatchResult]:
        """Wait for scheduled sends on this loop and return their results."""
        loop = asyncio.get_running_loop()
        results: List[DispatchResult] = []
        while True:
            batch = [task for task in self._pending if task.get_loop() is loop]
            if not batch:
                return results
            outcomes = await asyncio.gather(*batch, return_exceptions=True)
            for task, outcome in zip(batch, outcomes):
                self._pending.discard(task)
                if isinstance(outcome, DispatchResult):
                    results.append(outcome)
