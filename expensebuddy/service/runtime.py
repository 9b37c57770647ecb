from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from expensebuddy.config import Settings, get_settings, reset_settings_cache
from expensebuddy.logging import get_logger
from expensebuddy.service.auth import AuthService
from expensebuddy.service.email import EmailDispatcher, EmailService
from expensebuddy.service.family import FamilyService
from expensebuddy.service.tokens import TokenService
from expensebuddy.storage.common import FamilyStore
from expensebuddy.storage.memory import MemoryStore
from expensebuddy.storage.postgres import PostgresStore
from expensebuddy.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache]
RateLimitResult = Union[bool, Tuple[bool, int, int]]


def redis_location(url: Optional[str]) -> Optional[str]:
    """``host:port/db`` of a Redis URL, without credentials, for log lines."""
    if not url:
        return None
    try:
        parts = urlsplit(url)
        return f"{parts.hostname}:{parts.port or 6379}{parts.path}"
    except ValueError:
        return "unparseable"


class LocalLimiter:
    """In-process token buckets used when Redis is not available.

    Buckets are per process, so limits are only approximate behind more
    than one worker.
    """

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, capacity: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        per_second = capacity / window_seconds
        now = time.monotonic()
        with self._lock:
            level, seen_at = self._buckets.get(key, (float(capacity), now))
            level = min(float(capacity), level + (now - seen_at) * per_second)
            allowed = level >= cost
            if allowed:
                level -= cost
            self._buckets[key] = (level, now)
        wait = 0 if allowed else max(1, int((cost - level) / per_second))
        return allowed, int(level), wait


def _build_store(settings: Settings) -> FamilyStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
    return PostgresStore(settings.database_url)


def _connect_cache(settings: Settings) -> Optional[Cache]:
    """Reachable Redis cache, or None when a fallback is permitted."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # The sync client keeps tests off a shared event loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc
    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unreachable; set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV to run "
            "with in-process revocation and rate limits"
        ) from failure
    logger.warning(
        "redis_fallback_in_process",
        redis=redis_location(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
    )
    return None


class Runtime:
    """Wires settings, storage and the services one process shares."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = _build_store(self.settings)
        self.cache = _connect_cache(self.settings)
        self.limiter = LocalLimiter()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            client_url=self.settings.client_url,
            timeout=self.settings.email_send_timeout_seconds,
        )
        self.mailer = EmailDispatcher(
            self.email, timeout=self.settings.email_send_timeout_seconds
        )
        self.tokens = TokenService(self.settings, self.cache)
        self.auth = AuthService(
            self.store, self.tokens, self.email, self.settings, mailer=self.mailer
        )
        self.family = FamilyService(
            self.store, self.tokens, self.email, self.settings, mailer=self.mailer
        )

        logger.info(
            "runtime_ready",
            store=type(self.store).__name__,
            redis=self.cache is not None,
            smtp=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.mailer.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def _discard_cache(cache: Cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        asyncio.get_running_loop().create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _discard_cache(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Token-bucket check against Redis, or the local limiter without it.

    A Redis error degrades to the local limiter rather than letting the
    request through unchecked.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    window_seconds = window_seconds if window_seconds > 0 else 60
    if runtime.cache is not None:
        try:
            return await runtime.cache.check_rate_limit(
                key, limit, window_seconds, return_remaining=return_remaining, cost=cost
            )
        except Exception as exc:
            logger.warning("rate_limit_cache_failed", error=str(exc))
    outcome = runtime.limiter.take(key, limit, window_seconds, cost)
    return outcome if return_remaining else outcome[0]
