#  Generation Broker - Task Queue Tests
#
#  Depends on: broker/services/task_queue.py
#  Used by:    pytest

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as aioredis

from broker.exceptions import TransientIOError
from broker.services.task_queue import RedisTaskQueue


class TestRedisTaskQueue:
    async def test_fifo(self, queue):
        for task_id in (3, 1, 2):
            await queue.push(task_id)
        assert await queue.length() == 3
        assert [await queue.pop(1) for _ in range(3)] == [3, 1, 2]

    async def test_pop_timeout_returns_none(self, queue):
        assert await queue.pop(0.1) is None

    async def test_malformed_entry_is_dropped(self, queue, fake_redis):
        await fake_redis.rpush(queue.key, "not-a-number")
        await queue.push(7)
        assert await queue.pop(1) is None
        assert await queue.pop(1) == 7

    async def test_queued_ids_snapshot(self, queue):
        await queue.push(1)
        await queue.push(5)
        assert await queue.queued_ids() == {1, 5}
        assert await queue.length() == 2

    async def test_push_failure_is_transient(self):
        broken = AsyncMock()
        broken.rpush = AsyncMock(side_effect=aioredis.ConnectionError("down"))
        with pytest.raises(TransientIOError, match="Failed to enqueue"):
            await RedisTaskQueue(broken).push(1)
