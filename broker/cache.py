#  Generation Broker - Redis Cache
#
#  JSON key/value cache with per-key TTL on top of redis.asyncio.
#  Every write to an underlying object must delete its key.
#
#  Keys:
#    user:<id>             account snapshot        (cache.user_ttl_sec)
#    model_params:<id>     model parameter schema  (cache.model_params_ttl_sec)
#    denylist:<token>      revoked JWT             (token remaining life)
#
#  Depends on: config.py
#  Used by:    container.py, services/accounts.py, services/ai_models.py,
#              services/auth.py, services/submission.py

import json
import logging

import redis.asyncio as aioredis

from broker.config import REDIS_URL

logger = logging.getLogger("broker.cache")


def create_redis(url: str = REDIS_URL) -> aioredis.Redis:
    """Redis client shared by the cache and the task queue."""
    return aioredis.from_url(url, decode_responses=True)


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


def model_params_key(model_id: int) -> str:
    return f"model_params:{model_id}"


def denylist_key(token: str) -> str:
    return f"denylist:{token}"


class Cache:
    """Thin JSON layer over a redis.asyncio client."""

    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def get_json(self, key: str):
        raw = await self._redis.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping undecodable cache entry %s", key)
            await self._redis.delete(key)
            return None

    async def set_json(self, key: str, value, ttl: int | float):
        await self._redis.set(key, json.dumps(value, default=str), ex=max(1, int(ttl)))

    async def set_flag(self, key: str, ttl: int | float):
        await self._redis.set(key, "1", ex=max(1, int(ttl)))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def delete(self, *keys: str):
        if keys:
            await self._redis.delete(*keys)

    async def invalidate_user(self, user_id: int):
        """Drop the user:<id> snapshot. Cache failures never fail the caller's write."""
        try:
            await self._redis.delete(user_key(user_id))
        except aioredis.RedisError as e:
            logger.warning("Failed to invalidate cache for user %s: %s", user_id, e)
