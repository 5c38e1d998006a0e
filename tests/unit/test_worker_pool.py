#  Generation Broker - Worker Pool Tests
#
#  Tests for the queue consumer and the shared terminal-transition logic:
#  completion, retry re-enqueue, fail-and-refund, in-flight cancellation,
#  duplicate deliveries and shutdown.
#
#  Depends on: broker/services/worker_pool.py, broker/services/task_lifecycle.py
#  Used by:    pytest

import asyncio
import json
import time
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from broker.exceptions import RemoteFailureError, ValidationError
from broker.executors.base import TaskExecutor
from broker.executors.registry import REMOTE_API, SIMULATED, VENDOR_API
from broker.models.enums import TaskStatus, TransactionKind
from broker.models.records import Task
from broker.services.ledger import TransactionFilter
from broker.services.task_lifecycle import executor_name_for
from broker.services.worker_pool import WorkerPool


class ScriptedExecutor(TaskExecutor):
    """Returns `result` or raises `error`; optionally runs `during(task)` first."""

    name = "scripted"

    def __init__(self, result=None, error=None, during=None):
        self.result = result if result is not None else {"oss_url": "https://cdn.test/out.mp4"}
        self.error = error
        self.during = during
        self.calls = 0

    async def run(self, task):
        self.calls += 1
        if self.during:
            await self.during(task)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def pool(tasks, queue, registry, accounting):
    return WorkerPool(tasks, queue, registry, accounting, pop_timeout=0.05, shutdown_grace=0.05)


async def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestProcessTask:
    async def test_success_marks_completed(self, pool, registry, make_account, make_task, tasks):
        executor = ScriptedExecutor()
        registry.register("scripted", executor)
        user = await make_account(balance=10)
        task = await make_task(user.id, input={"executor": "scripted"})

        await pool.process_task(task.id)

        done = await tasks.get(task.id)
        assert done.status == TaskStatus.COMPLETED
        assert done.result_url == "https://cdn.test/out.mp4"
        assert executor.calls == 1

    async def test_hooks_run_before_completion(self, pool, registry, make_account, make_task):
        seen = []
        registry.register("scripted", ScriptedExecutor(result={"result_url": "https://x/y"}))
        registry.add_hook(lambda task, result: seen.append((task.id, result["result_url"])))
        user = await make_account()
        task = await make_task(user.id, input={"executor": "scripted"})

        await pool.process_task(task.id)
        assert seen == [(task.id, "https://x/y")]

    async def test_permanent_error_fails_and_refunds(
        self, pool, registry, make_account, seeded_model, submission, queue, tasks, accounts, ledger,
    ):
        registry.register("broken", ScriptedExecutor(error=ValidationError("bad input")))
        user = await make_account(balance=100)
        task = await submission.submit(
            {"model_id": seeded_model.id, "executor": "broken"}, user.id, user.username,
        )
        assert (await accounts.get(user.id)).balance == Decimal("90")

        task_id = await queue.pop(1)
        assert task_id == task.id
        await pool.process_task(task_id)

        failed = await tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error_log == "bad input"
        assert failed.retry_count == 0

        account = await accounts.get(user.id)
        assert account.balance == Decimal("100")
        assert account.total_consumed == Decimal("0")

        entries, total = await ledger.find(TransactionFilter(user_id=user.id))
        assert total == 2
        refund, consume = entries
        assert (consume.kind, consume.amount) == (TransactionKind.USER_CONSUME, Decimal("-10"))
        assert (refund.kind, refund.amount) == (TransactionKind.USER_REFUND, Decimal("10"))
        assert refund.reason == f"Refund for task {task.id} failure"

    async def test_transient_error_requeues(self, pool, registry, make_account, make_task, tasks, queue):
        registry.register("flaky", ScriptedExecutor(error=RemoteFailureError("upstream 502")))
        user = await make_account()
        task = await make_task(user.id, input={"executor": "flaky"}, cost=5)

        await pool.process_task(task.id)

        retried = await tasks.get(task.id)
        assert retried.status == TaskStatus.PENDING_EXECUTION
        assert retried.retry_count == 1
        assert retried.error_log == "upstream 502"
        assert await queue.queued_ids() == {task.id}

    async def test_retry_budget_exhausted_fails_with_refund(
        self, pool, registry, make_account, make_task, tasks, accounts,
    ):
        registry.register("flaky", ScriptedExecutor(error=RemoteFailureError("still down")))
        user = await make_account(balance=0)
        task = await make_task(user.id, input={"executor": "flaky"}, cost=5, max_retries=0)

        await pool.process_task(task.id)

        failed = await tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error_log == "still down"
        assert (await accounts.get(user.id)).balance == Decimal("5")

    async def test_unregistered_executor_is_permanent(self, pool, make_account, make_task, tasks):
        user = await make_account()
        task = await make_task(user.id, input={"executor": "missing"})

        await pool.process_task(task.id)

        failed = await tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED
        assert "executor 'missing' is not registered" in failed.error_log

    async def test_refund_failure_is_appended(self, tasks, queue, registry, make_account, make_task):
        accounting = AsyncMock()
        accounting.refund.side_effect = RuntimeError("db down")
        pool = WorkerPool(tasks, queue, registry, accounting)
        registry.register("broken", ScriptedExecutor(error=ValidationError("bad input")))
        user = await make_account()
        task = await make_task(user.id, input={"executor": "broken"}, cost=3)

        await pool.process_task(task.id)

        failed = await tasks.get(task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error_log == "bad input; Refund failed: db down"

    async def test_cancelled_in_flight_stays_cancelled(
        self, pool, registry, make_account, make_task, tasks, submission,
    ):
        async def cancel_midway(task):
            await submission.cancel(task.id, task.creator_id)

        registry.register("scripted", ScriptedExecutor(during=cancel_midway))
        user = await make_account()
        task = await make_task(user.id, input={"executor": "scripted"})

        await pool.process_task(task.id)

        final = await tasks.get(task.id)
        assert final.status == TaskStatus.CANCELLED
        assert final.result_url == ""

    @pytest.mark.parametrize("status", [
        TaskStatus.COMPLETED, TaskStatus.PROCESSING, TaskStatus.PENDING_AUDIT, TaskStatus.CANCELLED,
    ])
    async def test_non_runnable_delivery_is_skipped(self, pool, registry, make_account, make_task, tasks, status):
        executor = ScriptedExecutor()
        registry.register("scripted", executor)
        user = await make_account()
        task = await make_task(user.id, input={"executor": "scripted"}, status=status)

        await pool.process_task(task.id)

        assert executor.calls == 0
        assert (await tasks.get(task.id)).status == status

    async def test_duplicate_delivery_runs_once(self, pool, registry, make_account, make_task):
        executor = ScriptedExecutor()
        registry.register("scripted", executor)
        user = await make_account()
        task = await make_task(user.id, input={"executor": "scripted"})

        await pool.process_task(task.id)
        await pool.process_task(task.id)
        assert executor.calls == 1

    async def test_unknown_task_is_dropped(self, pool):
        await pool.process_task(999_999)


class TestDispatcher:
    async def test_consumes_queue(self, pool, registry, make_account, make_task, queue, tasks):
        registry.register("scripted", ScriptedExecutor())
        user = await make_account()
        first = await make_task(user.id, input={"executor": "scripted"})
        second = await make_task(user.id, input={"executor": "scripted"})
        await queue.push(first.id)
        await queue.push(second.id)

        await pool.start()
        try:
            async def both_done():
                statuses = [(await tasks.get(t.id)).status for t in (first, second)]
                return statuses == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
            await _wait_for(both_done)
        finally:
            await pool.stop()
        assert pool.in_flight == 0

    async def test_stop_cancels_after_grace(self, pool, registry, make_account, make_task, queue, tasks):
        async def hang(task):
            await asyncio.Event().wait()

        registry.register("slow", ScriptedExecutor(during=hang))
        user = await make_account()
        task = await make_task(user.id, input={"executor": "slow"})
        await queue.push(task.id)

        await pool.start()

        async def running():
            return pool.in_flight == 1
        await _wait_for(running)
        await pool.stop()

        # Left for start-up recovery
        assert (await tasks.get(task.id)).status == TaskStatus.PROCESSING
        assert pool.in_flight == 0

    async def test_start_is_idempotent(self, pool):
        await pool.start()
        first = pool._task
        await pool.start()
        assert pool._task is first
        await pool.stop()


class TestExecutorSelection:
    @pytest.mark.parametrize("params,expected", [
        ({"executor": "custom", "model": {}}, "custom"),
        ({"model": {"model_url": "https://v"}}, VENDOR_API),
        ({"target_url": "https://api"}, REMOTE_API),
        ({"prompt": "hi"}, SIMULATED),
        ({"executor": ""}, SIMULATED),
    ])
    def test_executor_name_for(self, params, expected):
        now = time.time()
        task = Task(
            id=1, creator_id=1, creator_name="t", status=TaskStatus.PROCESSING,
            input_json=json.dumps(params), cost=Decimal("0"), retry_count=0,
            max_retries=3, created_at=now, updated_at=now,
        )
        assert executor_name_for(task) == expected
