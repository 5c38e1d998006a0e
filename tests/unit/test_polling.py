#  Generation Broker - Polling Supervisor Tests
#
#  Tests for start-up recovery and the message-driven polling loop:
#  adoption of remote jobs, completion, retry budget with refund, and
#  removal of tasks finalized elsewhere.
#
#  Depends on: broker/services/polling.py
#  Used by:    pytest

import asyncio
from decimal import Decimal

import pytest

from broker.exceptions import RemoteFailureError
from broker.executors.base import TaskExecutor
from broker.executors.registry import VENDOR_API
from broker.models.enums import TaskStatus
from broker.services.polling import PollingSupervisor


class ResumingExecutor(TaskExecutor):
    """Stands in for the vendor executor on a task that already has a remote id."""

    name = VENDOR_API

    def __init__(self, error=None):
        self.error = error
        self.seen_remote_ids = []

    async def run(self, task):
        self.seen_remote_ids.append(task.remote_task_id)
        if self.error:
            raise self.error
        return {
            "oss_url": f"https://cdn.test/tasks/{task.remote_task_id}.mp4",
            "remote_task_id": task.remote_task_id,
        }


@pytest.fixture
async def supervisor(tasks, queue, registry, accounting):
    sup = PollingSupervisor(tasks, queue, registry, accounting, tick_interval=3600, max_retries=2)
    await sup.start()
    yield sup
    await sup.stop()


async def _stuck_task(make_task, tasks, user_id, remote_id, *, input=None, cost=10):
    task = await make_task(user_id, input=input, cost=cost, status=TaskStatus.PROCESSING)
    if remote_id:
        await tasks.set_remote_task_id(task.id, remote_id)
    return await tasks.get(task.id)


class TestAdoption:
    async def test_adopted_task_completes_on_tick(self, supervisor, registry, make_account, make_task, tasks):
        executor = ResumingExecutor()
        registry.register(VENDOR_API, executor)
        user = await make_account(balance=0)
        task = await _stuck_task(
            make_task, tasks, user.id, "X",
            input={"model": {"model_url": "https://vendor.test/v3/async/video"}},
        )

        counts = await supervisor.recover_stuck_tasks()
        assert counts == {"adopted": 1, "requeued": 0}

        await supervisor.tick_now()

        done = await tasks.get(task.id)
        assert done.status == TaskStatus.COMPLETED
        assert done.result_url == "https://cdn.test/tasks/X.mp4"
        assert executor.seen_remote_ids == ["X"]
        assert supervisor.tracked() == {}

    async def test_simulated_input_is_polled_with_vendor(self, supervisor, registry, make_account, make_task, tasks):
        executor = ResumingExecutor()
        registry.register(VENDOR_API, executor)
        user = await make_account()
        task = await _stuck_task(make_task, tasks, user.id, "sim-1", input={"prompt": "x"})

        await supervisor.recover_stuck_tasks()
        await supervisor.tick_now()

        assert executor.seen_remote_ids == ["sim-1"]
        assert (await tasks.get(task.id)).status == TaskStatus.COMPLETED

    async def test_retry_budget_then_fail_and_refund(
        self, supervisor, registry, make_account, make_task, tasks, accounts,
    ):
        registry.register(VENDOR_API, ResumingExecutor(error=RemoteFailureError("still broken")))
        user = await make_account(balance=0)
        task = await _stuck_task(make_task, tasks, user.id, "Y", input={"model": {}})
        supervisor.add(task.id, "Y")

        await supervisor.tick_now()
        await supervisor.tick_now()
        entry = supervisor.tracked()[task.id]
        assert entry.retry_count == 2
        assert not entry.in_flight
        assert (await tasks.get(task.id)).status == TaskStatus.PROCESSING

        await supervisor.tick_now()

        failed = await tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error_log == "Polling failed after retries: still broken"
        assert (await accounts.get(user.id)).balance == Decimal("10")
        assert supervisor.tracked() == {}

    async def test_finalized_task_is_dropped(self, supervisor, registry, make_account, make_task, tasks):
        executor = ResumingExecutor()
        registry.register(VENDOR_API, executor)
        user = await make_account()
        task = await _stuck_task(make_task, tasks, user.id, "Z", input={"model": {}})
        supervisor.add(task.id, "Z")
        await tasks.transition(task.id, TaskStatus.CANCELLED)

        await supervisor.tick_now()

        assert executor.seen_remote_ids == []
        assert supervisor.tracked() == {}
        assert (await tasks.get(task.id)).status == TaskStatus.CANCELLED

    async def test_remove_stops_tracking(self, supervisor, registry, make_account, make_task, tasks):
        executor = ResumingExecutor()
        registry.register(VENDOR_API, executor)
        user = await make_account()
        task = await _stuck_task(make_task, tasks, user.id, "R", input={"model": {}})
        supervisor.add(task.id, "R")
        supervisor.remove(task.id)

        await supervisor.tick_now()
        assert executor.seen_remote_ids == []
        assert supervisor.tracked() == {}

    async def test_tick_with_empty_table_returns(self, supervisor):
        await supervisor.tick_now()
        assert supervisor.tracked() == {}


class TestApplyErrors:
    async def test_reload_failure_does_not_wedge_other_entries(
        self, tasks, queue, registry, accounting, accounts, make_account, make_task, monkeypatch,
    ):
        registry.register(VENDOR_API, ResumingExecutor(error=RemoteFailureError("gone bad")))
        sup = PollingSupervisor(tasks, queue, registry, accounting, tick_interval=3600, max_retries=0)
        user = await make_account(balance=0)
        first = await _stuck_task(make_task, tasks, user.id, "A", input={"model": {}})
        second = await _stuck_task(make_task, tasks, user.id, "B", input={"model": {}})
        sup.add(first.id, "A")
        sup.add(second.id, "B")

        # The first task's reload after its poll blows up once
        real_find = tasks.find
        calls = {"n": 0}

        async def flaky_find(task_id):
            if task_id == first.id:
                calls["n"] += 1
                if calls["n"] == 2:
                    raise RuntimeError("db locked")
            return await real_find(task_id)

        monkeypatch.setattr(tasks, "find", flaky_find)

        await sup.start()
        try:
            await asyncio.wait_for(sup.tick_now(), timeout=5)

            tracked = sup.tracked()
            assert list(tracked) == [first.id]
            assert not tracked[first.id].in_flight
            assert (await tasks.get(first.id)).status == TaskStatus.PROCESSING
            assert (await tasks.get(second.id)).status == TaskStatus.FAILED

            await asyncio.wait_for(sup.tick_now(), timeout=5)
        finally:
            await sup.stop()

        assert (await tasks.get(first.id)).status == TaskStatus.FAILED
        assert sup.tracked() == {}
        assert (await accounts.get(user.id)).balance == Decimal("20")


class TestRecovery:
    async def test_requeues_unsubmitted_and_missing(self, tasks, queue, registry, accounting, make_account, make_task):
        sup = PollingSupervisor(tasks, queue, registry, accounting)
        user = await make_account()
        stuck = await _stuck_task(make_task, tasks, user.id, "")
        lost = await make_task(user.id)
        queued = await make_task(user.id)
        await queue.push(queued.id)

        counts = await sup.recover_stuck_tasks()

        assert counts == {"adopted": 0, "requeued": 2}
        assert (await tasks.get(stuck.id)).status == TaskStatus.PENDING_EXECUTION
        assert await queue.queued_ids() == {stuck.id, lost.id, queued.id}
        assert await queue.length() == 3

    async def test_terminal_tasks_are_left_alone(self, tasks, queue, registry, accounting, make_account, make_task):
        sup = PollingSupervisor(tasks, queue, registry, accounting)
        user = await make_account()
        await make_task(user.id, status=TaskStatus.COMPLETED)
        await make_task(user.id, status=TaskStatus.PENDING_AUDIT)

        assert await sup.recover_stuck_tasks() == {"adopted": 0, "requeued": 0}
        assert await queue.length() == 0
