"""
config/redis_client.py
Async Redis client: read-through caches for the public catalogue and
provider pages, the JWT deny-list, and per-IP rate limiting.

Redis is never the source of truth. Every cached value can be rebuilt from
the database, so callers treat a miss and an outage the same way.
"""

import json
import logging
from typing import Any, Optional
import redis.asyncio as aioredis

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Key Layout ────────────────────────────────────────────────
CATEGORIES_POPULAR_KEY = "categories:popular"
CATEGORIES_STATS_KEY = "categories:stats"


def provider_page_key(provider_id) -> str:
    return f"provider:{provider_id}"


def revoked_jti_key(jti: str) -> str:
    return f"jwt_revoked:{jti}"


def unauth_rate_key(client_ip: str) -> str:
    return f"rate:unauth:{client_ip}"


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Open the pool. The app still starts if Redis is down; caching degrades."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    try:
        await redis_client.ping()
    except aioredis.RedisError as e:
        logger.error("Redis unreachable at startup: %s", e)


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


async def ping_redis() -> None:
    """Raises when Redis is not initialized or does not answer."""
    if redis_client is None:
        raise RuntimeError("Redis not initialized")
    await redis_client.ping()


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """JSON values with a TTL, plus the deny-list and rate-limit counters."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny-list a token id until the token would have expired anyway."""
        if ttl_seconds > 0:
            await self.client.setex(revoked_jti_key(jti), ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(revoked_jti_key(jti)) == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window counter. The window starts at the first hit, so the
        expiry is set only once per window.
        Returns True if the request is allowed.
        """
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count <= limit
