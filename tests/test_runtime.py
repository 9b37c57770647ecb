"""Runtime wiring and the in-process rate limiter."""

import pytest

from expensebuddy.service.runtime import (
    LocalLimiter,
    check_rate_limit,
    get_runtime,
    redis_location,
)
from expensebuddy.storage.memory import MemoryStore


class TestLocalLimiter:
    def test_bucket_drains_then_refuses(self):
        limiter = LocalLimiter()
        outcomes = [limiter.take("login:pat@example.com", 3, 60)[0] for _ in range(4)]
        assert outcomes == [True, True, True, False]

    def test_refusal_reports_wait(self):
        limiter = LocalLimiter()
        for _ in range(2):
            limiter.take("k", 2, 60)
        allowed, remaining, wait = limiter.take("k", 2, 60)
        assert (allowed, remaining) == (False, 0)
        assert 1 <= wait <= 30

    def test_keys_are_independent(self):
        limiter = LocalLimiter()
        limiter.take("a", 1, 60)
        assert limiter.take("a", 1, 60)[0] is False
        assert limiter.take("b", 1, 60)[0] is True


class TestCheckRateLimit:
    async def test_falls_back_without_redis(self):
        runtime = get_runtime()
        assert runtime.cache is None

        first = await check_rate_limit(runtime, "reset:pat@example.com", 1, 60, return_remaining=True)
        second = await check_rate_limit(runtime, "reset:pat@example.com", 1, 60)

        assert first == (True, 0, 0)
        assert second is False

    async def test_non_positive_limit_disables_check(self):
        assert await check_rate_limit(get_runtime(), "k", 0, 60) is True

    async def test_cache_error_degrades_to_local(self):
        class BrokenCache:
            async def check_rate_limit(self, *args, **kwargs):
                raise ConnectionError("redis gone")

        runtime = get_runtime()
        runtime.cache = BrokenCache()
        try:
            assert await check_rate_limit(runtime, "k", 1, 60) is True
            assert await check_rate_limit(runtime, "k", 1, 60) is False
        finally:
            runtime.cache = None


def test_runtime_uses_memory_store_in_tests():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.auth.store is runtime.store
    assert runtime.family.store is runtime.store
    assert runtime.auth.mailer is runtime.family.mailer is runtime.mailer


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache.internal:6380/2", "cache.internal:6380/2"),
        ("redis://localhost", "localhost:6379"),
        ("", None),
    ],
)
def test_redis_location_hides_credentials(url, expected):
    assert redis_location(url) == expected
