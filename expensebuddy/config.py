from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from expensebuddy.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    Tokens must stay valid across restarts, so generated secrets are written
    once under SHARED_FS_ROOT with owner-only permissions.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/expensebuddy"))
    secret_path = fs_root / f".{name}"

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity and family membership service."""

    app_name: str = env_field("Expense Buddy", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/expensebuddy", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/expensebuddy", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: sync Redis client, in-process fallbacks.",
    )

    # Token signing. Session tokens and email-link tokens never share a secret.
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_email_secret: str = env_field(None, "JWT_EMAIL_SECRET", validate_default=True)
    jwt_issuer: str = env_field("expense-buddy", "JWT_ISSUER")
    jwt_audience_app: str = env_field("expense-buddy-app", "JWT_AUDIENCE_APP")
    jwt_audience_verification: str = env_field(
        "expense-buddy-verification", "JWT_AUDIENCE_VERIFICATION"
    )
    jwt_audience_password_reset: str = env_field(
        "expense-buddy-password-reset", "JWT_AUDIENCE_PASSWORD_RESET"
    )
    jwt_audience_email_change: str = env_field(
        "expense-buddy-email-change", "JWT_AUDIENCE_EMAIL_CHANGE"
    )
    jwt_audience_invitation: str = env_field(
        "expense-buddy-invitation", "JWT_AUDIENCE_INVITATION"
    )
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES"
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_change_ttl_minutes: int = env_field(60, "EMAIL_CHANGE_TTL_MINUTES")
    family_invitation_ttl_minutes: int = env_field(
        24 * 60, "FAMILY_INVITATION_TTL_MINUTES"
    )
    invite_code_ttl_days: int = env_field(30, "INVITE_CODE_TTL_DAYS")

    # argon2id cost factors
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Expense Buddy", "EMAIL_FROM_NAME")
    email_send_timeout_seconds: float = env_field(10.0, "EMAIL_SEND_TIMEOUT_SECONDS")
    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")

    # Rate limits (requests per minute, per key)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret("jwt_access_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret("jwt_refresh_secret")

    @field_validator("jwt_email_secret", mode="before")
    @classmethod
    def _ensure_email_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret("jwt_email_secret")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
