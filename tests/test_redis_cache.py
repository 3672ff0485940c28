"""
tests/test_redis_cache.py
RedisCache key-spaces: profile cache, deny-list, run locks, rate counters.
"""

import pytest

from config.redis_client import RedisCache, mentor_key


@pytest.mark.asyncio
async def test_invalidate_mentor_drops_cached_profile(fake_redis):
    cache = RedisCache(fake_redis)
    await cache.set(mentor_key("m-1"), {"name": "Ada"})
    assert await cache.get(mentor_key("m-1")) == {"name": "Ada"}

    await cache.invalidate_mentor("m-1")
    assert await cache.get(mentor_key("m-1")) is None


@pytest.mark.asyncio
async def test_expired_token_is_not_deny_listed(fake_redis):
    cache = RedisCache(fake_redis)
    await cache.revoke_token("jti-expired", 0)
    await cache.revoke_token("jti-live", 120)

    assert await cache.is_token_revoked("jti-expired") is False
    assert await cache.is_token_revoked("jti-live") is True


@pytest.mark.asyncio
async def test_run_lock_release_checks_owner(fake_redis):
    cache = RedisCache(fake_redis)
    assert await cache.acquire_run_lock("process-payouts", "worker-a") is True
    assert await cache.acquire_run_lock("process-payouts", "worker-b") is False

    assert await cache.release_run_lock("process-payouts", "worker-b") is False
    assert await fake_redis.get("sweep_lock:process-payouts") == "worker-a"

    assert await cache.release_run_lock("process-payouts", "worker-a") is True
    assert await fake_redis.get("sweep_lock:process-payouts") is None


@pytest.mark.asyncio
async def test_hit_counts_within_window(fake_redis):
    cache = RedisCache(fake_redis)
    counts = [await cache.hit("login", "10.0.0.1") for _ in range(3)]

    assert counts == [1, 2, 3]
    assert 0 < await fake_redis.ttl("rate:login:10.0.0.1") <= 60
    assert await cache.hit("login", "10.0.0.2") == 1
