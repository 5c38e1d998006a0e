#  Generation Broker - Task Queue
#
#  Durable FIFO of task ids on a Redis list (RPUSH / BLPOP).
#  Delivery is at-least-once; consumers re-check task status.
#
#  Depends on: config.py, exceptions.py
#  Used by:    container.py, services/submission.py, services/worker_pool.py,
#              services/polling.py

import logging

import redis.asyncio as aioredis

from broker.config import QUEUE_KEY
from broker.exceptions import TransientIOError

logger = logging.getLogger("broker.queue")


class RedisTaskQueue:
    """Task-id queue backed by a Redis list."""

    def __init__(self, redis: aioredis.Redis, key: str = QUEUE_KEY):
        self._redis = redis
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    async def push(self, task_id: int):
        try:
            await self._redis.rpush(self._key, str(task_id))
        except aioredis.RedisError as e:
            raise TransientIOError(f"Failed to enqueue task {task_id}: {e}") from e
        logger.debug("Enqueued task %s", task_id)

    async def pop(self, timeout: float) -> int | None:
        """Block up to `timeout` seconds for the next id. None on timeout.

        Malformed entries are logged and skipped (returned as None).
        """
        try:
            item = await self._redis.blpop([self._key], timeout=timeout)
        except aioredis.RedisError as e:
            raise TransientIOError(f"Queue pop failed: {e}") from e
        if item is None:
            return None
        _, raw = item
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed queue entry %r", raw)
            return None

    async def length(self) -> int:
        return await self._redis.llen(self._key)

    async def queued_ids(self) -> set[int]:
        """Snapshot of ids currently waiting (used by start-up recovery)."""
        raw = await self._redis.lrange(self._key, 0, -1)
        ids = set()
        for item in raw:
            try:
                ids.add(int(item))
            except (TypeError, ValueError):
                continue
        return ids
