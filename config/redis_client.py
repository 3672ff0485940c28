"""
config/redis_client.py
Async Redis client and the key-spaces the API keeps in it:

    mentor:{id}            cached public mentor profile (JSON)
    jwt_revoked:{jti}      logout deny-list, expires with the token
    sweep_lock:{name}      single-runner lock for a scheduled sweep
    rate:{scope}:{ident}   fixed-window request counters
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import settings

redis_client: Optional[aioredis.Redis] = None


def connect(url: str = settings.REDIS_URL) -> aioredis.Redis:
    return aioredis.from_url(url, encoding="utf-8", decode_responses=True, max_connections=50)


async def init_redis() -> None:
    global redis_client
    redis_client = connect()
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency. Overridden with a fake client in tests."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


def mentor_key(mentor_id: str) -> str:
    return f"mentor:{mentor_id}"


class RedisCache:
    """Thin wrapper giving each key-space its own verbs."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── JSON cache ───────────────────────────────────────────
    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def invalidate_mentor(self, mentor_id: str) -> None:
        """Drop the cached public profile after any write to the mentor row."""
        await self.delete(mentor_key(mentor_id))

    # ── Sweep run locks ──────────────────────────────────────
    async def acquire_run_lock(self, name: str, owner: str, ttl: int = settings.SWEEP_LOCK_TTL) -> bool:
        """SET NX with expiry. False means another run holds the lock."""
        return await self.client.set(f"sweep_lock:{name}", owner, ex=ttl, nx=True) is True

    async def release_run_lock(self, name: str, owner: str) -> bool:
        """Release only a lock we still own; an expired-and-retaken lock is left alone."""
        key = f"sweep_lock:{name}"
        if await self.client.get(key) != owner:
            return False
        await self.client.delete(key)
        return True

    # ── JWT deny-list ────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate limiting ────────────────────────────────────────
    async def hit(self, scope: str, ident: str, window_seconds: int = 60) -> int:
        """Count one request in the current fixed window and return the running total."""
        key = f"rate:{scope}:{ident}"
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count
