from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id shared by log lines and the response envelope
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys never reach a log sink
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization")
_SAFE_SUFFIXES = ("_hash", "_prefix", "_type", "_kind")


def redact_email(email: str) -> str:
    """Keep the first two characters of the mailbox and the domain."""
    if "@" not in (email or ""):
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a request scope: fresh log context keyed by ``request_id``."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=cid)
    return cid


def bind_request_context(**fields: Any) -> None:
    """Attach caller identity (user_id, family_id) to every later log line."""
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in fields.items() if value is not None}
    )


def _redact_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith(_SAFE_SUFFIXES):
            continue
        if any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = "[redacted]"
        elif "email" in lower_key or lower_key == "to":
            event_dict[key] = redact_email(value)
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install the processor chain.

    ``fmt`` is ``json`` for deployments or ``console`` for a local terminal.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_fields,
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    fmt=os.getenv("LOG_FORMAT", "json").strip().lower(),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
