#  Generation Broker - Polling Supervisor
#
#  Resumes remote jobs that outlived their worker. A single loop task owns
#  the table of tracked tasks and is driven only by inbox messages:
#    add     start tracking a task with a remote id
#    remove  stop tracking
#    tick    poll every idle entry in parallel (sent by the timer every N s)
#    results outcomes of a tick's polls, applied by the loop
#
#  Re-running an executor on a task that already has remote_task_id skips
#  submission, so each tick only advances the polling phase.
#
#  Depends on: config.py, executors/registry.py, services/task_lifecycle.py,
#              services/tasks.py, services/task_queue.py, services/accounting.py
#  Used by:    container.py, app.py (background task)

import asyncio
import logging
import time
from dataclasses import dataclass

from broker.config import SUPERVISOR_MAX_RETRIES, SUPERVISOR_TICK_INTERVAL
from broker.exceptions import TransientIOError
from broker.executors.registry import SIMULATED, VENDOR_API
from broker.logging_config import bind_task, update_task_context
from broker.models.enums import TaskStatus
from broker.services.task_lifecycle import complete_task, executor_name_for, fail_with_refund

logger = logging.getLogger("broker.polling")

_DONE = "done"
_GONE = "gone"
_ERROR = "error"


@dataclass
class PollEntry:
    task_id: int
    remote_task_id: str
    executor_name: str = VENDOR_API
    retry_count: int = 0
    last_poll: float | None = None
    in_flight: bool = False


class PollingSupervisor:
    """Message-driven owner of the remote polling table."""

    def __init__(
        self,
        tasks,
        queue,
        registry,
        accounting,
        *,
        tick_interval: float = SUPERVISOR_TICK_INTERVAL,
        max_retries: int = SUPERVISOR_MAX_RETRIES,
    ):
        self._tasks = tasks
        self._queue = queue
        self._registry = registry
        self._accounting = accounting
        self._tick_interval = tick_interval
        self._max_retries = max_retries
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._entries: dict[int, PollEntry] = {}
        self._loop_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None
        self._batches: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public interface (messages)
    # ------------------------------------------------------------------

    def add(self, task_id: int, remote_task_id: str, executor_name: str = VENDOR_API):
        self._inbox.put_nowait(("add", PollEntry(task_id, remote_task_id, executor_name)))

    def remove(self, task_id: int):
        self._inbox.put_nowait(("remove", task_id))

    async def tick_now(self):
        """Request a tick and wait until its outcomes are applied."""
        done = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(("tick", done))
        await done

    def tracked(self) -> dict[int, PollEntry]:
        """Read-only snapshot of the table."""
        return {k: PollEntry(**vars(v)) for k, v in self._entries.items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        if self._loop_task:
            return
        self._loop_task = asyncio.create_task(self._run_loop())
        self._timer_task = asyncio.create_task(self._timer())
        logger.info("Polling supervisor started (tick=%ss)", self._tick_interval)

    async def stop(self):
        for t in (self._timer_task, self._loop_task, *self._batches):
            if t:
                t.cancel()
        pending = [t for t in (self._timer_task, self._loop_task, *self._batches) if t]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._timer_task = None
        self._loop_task = None
        self._batches.clear()
        logger.info("Polling supervisor stopped (%d task(s) tracked)", len(self._entries))

    async def _timer(self):
        while True:
            await asyncio.sleep(self._tick_interval)
            self._inbox.put_nowait(("tick", None))

    async def _run_loop(self):
        while True:
            kind, payload = await self._inbox.get()
            done = None
            try:
                if kind == "add":
                    self._entries[payload.task_id] = payload
                    logger.info(
                        "Tracking task %s (remote %s via %s)",
                        payload.task_id, payload.remote_task_id, payload.executor_name,
                    )
                elif kind == "remove":
                    self._entries.pop(payload, None)
                elif kind == "tick":
                    self._start_tick(payload)
                elif kind == "results":
                    outcomes, done = payload
                    await self._apply(outcomes)
            except Exception as e:
                logger.error("Polling supervisor error handling %s: %s", kind, e, exc_info=True)
            finally:
                if done is not None and not done.done():
                    done.set_result(None)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _start_tick(self, done: asyncio.Future | None):
        idle = [e for e in self._entries.values() if not e.in_flight]
        if not idle:
            if done is not None and not done.done():
                done.set_result(None)
            return
        now = time.time()
        for entry in idle:
            entry.in_flight = True
            entry.last_poll = now
        batch = asyncio.create_task(self._poll_batch([e.task_id for e in idle], done))
        self._batches.add(batch)
        batch.add_done_callback(self._batches.discard)

    async def _poll_batch(self, task_ids: list[int], done: asyncio.Future | None):
        outcomes = await asyncio.gather(*(self._poll_one(tid) for tid in task_ids))
        self._inbox.put_nowait(("results", (list(zip(task_ids, outcomes)), done)))

    async def _poll_one(self, task_id: int) -> tuple[str, Exception | None]:
        bind_task(task_id)
        try:
            task = await self._tasks.find(task_id)
            if task is None or task.status.is_terminal:
                return _GONE, None
            entry_name = executor_name_for(task)
            if entry_name == SIMULATED:
                entry_name = VENDOR_API
            update_task_context(remote_task_id=task.remote_task_id, executor=entry_name)
            executor = self._registry.get(entry_name)
            if executor is None:
                return _ERROR, RuntimeError(f"executor '{entry_name}' is not registered")
            try:
                result = await executor.run(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Poll of task %s failed: %s", task_id, e)
                return _ERROR, e
            await complete_task(task=task, result=result, tasks=self._tasks, registry=self._registry)
            return _DONE, None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Polling task %s crashed: %s", task_id, e, exc_info=True)
            return _ERROR, e
        finally:
            bind_task(None)

    async def _apply(self, outcomes: list[tuple[int, tuple[str, Exception | None]]]):
        # Release every entry first so one bad outcome cannot wedge the rest
        for task_id, _ in outcomes:
            entry = self._entries.get(task_id)
            if entry is not None:
                entry.in_flight = False

        for task_id, (kind, error) in outcomes:
            try:
                await self._apply_one(task_id, kind, error)
            except Exception as e:
                logger.error("Applying poll outcome for task %s failed: %s", task_id, e, exc_info=True)

    async def _apply_one(self, task_id: int, kind: str, error: Exception | None):
        entry = self._entries.get(task_id)
        if entry is None:
            return
        if kind in (_DONE, _GONE):
            del self._entries[task_id]
            return

        entry.retry_count += 1
        if entry.retry_count <= self._max_retries:
            logger.info("Task %s poll retry %d/%d", task_id, entry.retry_count, self._max_retries)
            return

        task = await self._tasks.find(task_id)
        if task is not None:
            await fail_with_refund(
                task=task,
                error_log=f"Polling failed after retries: {error}",
                tasks=self._tasks,
                accounting=self._accounting,
            )
        # Untracked only once the failure is recorded; a raise above leaves it for the next tick
        self._entries.pop(task_id, None)

    # ------------------------------------------------------------------
    # Start-up recovery
    # ------------------------------------------------------------------

    async def recover_stuck_tasks(self) -> dict:
        """Re-adopt Processing tasks and re-enqueue anything runnable that isn't queued.

        Tasks with a remote id are tracked for polling; the rest are rewound to
        PendingExecution and pushed. PendingExecution tasks missing from the
        queue (e.g. a push that failed after commit) are pushed again.
        """
        adopted = requeued = 0
        for task in await self._tasks.stuck():
            if task.remote_task_id:
                name = executor_name_for(task)
                self.add(task.id, task.remote_task_id, VENDOR_API if name == SIMULATED else name)
                adopted += 1
                continue
            if await self._tasks.transition(
                task.id, TaskStatus.PENDING_EXECUTION, from_statuses={TaskStatus.PROCESSING},
            ):
                if await self._push(task.id):
                    requeued += 1

        queued = await self._queue.queued_ids()
        for task in await self._tasks.with_status(TaskStatus.PENDING_EXECUTION):
            if task.id not in queued and await self._push(task.id):
                queued.add(task.id)
                requeued += 1

        logger.info("Recovery: %d task(s) adopted for polling, %d re-enqueued", adopted, requeued)
        return {"adopted": adopted, "requeued": requeued}

    async def _push(self, task_id: int) -> bool:
        try:
            await self._queue.push(task_id)
            return True
        except TransientIOError as e:
            logger.error("Recovery could not enqueue task %s: %s", task_id, e)
            return False
