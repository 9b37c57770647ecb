"""Redis-backed blacklist and rate limits. Skipped when no local Redis answers."""

import os
import uuid

import pytest
from redis.exceptions import RedisError

from expensebuddy.storage.redis_cache import SyncRedisCache, _rate_key

REDIS_TEST_URL = os.environ.get("REDIS_TEST_URL", "redis://localhost:6379/1")


@pytest.fixture
def cache():
    cache = SyncRedisCache(REDIS_TEST_URL, socket_timeout=0.5)
    try:
        cache.verify_connection()
    except (RedisError, OSError):
        pytest.skip("Redis not available")
    yield cache
    cache.client.close()


def test_rate_key_hides_subject():
    key = _rate_key("login:pat@example.com")
    assert key.startswith("rate:")
    assert "pat@example.com" not in key


async def test_blacklist_round_trip(cache):
    jti = f"test-{uuid.uuid4()}"
    assert not await cache.is_token_blacklisted(jti)

    await cache.blacklist_token(jti, 30, "user_logout")

    assert await cache.is_token_blacklisted(jti)
    assert 0 < cache.client.ttl(f"auth:blacklist:{jti}") <= 30


async def test_non_positive_ttl_is_not_recorded(cache):
    jti = f"test-{uuid.uuid4()}"
    await cache.blacklist_token(jti, 0, "expired")
    assert not await cache.is_token_blacklisted(jti)


async def test_token_bucket_exhausts(cache):
    key = f"test:{uuid.uuid4()}"
    outcomes = [await cache.check_rate_limit(key, 3, 60) for _ in range(4)]
    assert outcomes == [True, True, True, False]

    allowed, remaining, reset_seconds = await cache.check_rate_limit(
        key, 3, 60, return_remaining=True
    )
    assert allowed is False
    assert remaining == 0
    assert reset_seconds >= 1
