#  Generation Broker - Worker Pool
#
#  One dispatcher loop blocks on the task queue and hands each id to a
#  concurrent worker, bounded by a semaphore. Workers drive a task from
#  PendingExecution through Processing to a terminal status.
#
#  Depends on: config.py, executors/registry.py, services/task_lifecycle.py,
#              services/tasks.py, services/task_queue.py, services/accounting.py
#  Used by:    container.py, app.py (background task)

import asyncio
import logging

from broker.config import MAX_CONCURRENT_TASKS, QUEUE_POP_TIMEOUT, SHUTDOWN_GRACE_SECONDS
from broker.exceptions import TransientIOError
from broker.logging_config import bind_task, update_task_context
from broker.models.enums import TaskStatus
from broker.services.task_lifecycle import complete_task, handle_failure, select_executor

logger = logging.getLogger("broker.worker")


class WorkerPool:
    """Queue consumer with concurrency control."""

    def __init__(
        self,
        tasks,
        queue,
        registry,
        accounting,
        *,
        max_concurrent: int = MAX_CONCURRENT_TASKS,
        pop_timeout: float = QUEUE_POP_TIMEOUT,
        shutdown_grace: float = SHUTDOWN_GRACE_SECONDS,
    ):
        self._tasks = tasks
        self._queue = queue
        self._registry = registry
        self._accounting = accounting
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._pop_timeout = pop_timeout
        self._shutdown_grace = shutdown_grace
        self._task: asyncio.Task | None = None
        self._running = False
        self._in_flight: set[asyncio.Task] = set()  # Tracked handles for clean shutdown

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self):
        """Start the dispatcher loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Worker pool started (max_concurrent=%d)", self._max_concurrent)

    async def stop(self):
        """Stop the dispatcher, give in-flight tasks the grace period, then cancel them.

        Cancelled tasks stay in Processing and are picked up by start-up recovery.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=self._shutdown_grace)
            for t in pending:
                t.cancel()
            if pending:
                logger.warning("Cancelled %d task(s) still running after grace period", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            self._in_flight.clear()
        logger.info("Worker pool stopped")

    async def _run_loop(self):
        while self._running:
            await self._semaphore.acquire()
            try:
                task_id = await self._queue.pop(self._pop_timeout)
            except TransientIOError as e:
                self._semaphore.release()
                logger.error("Queue error: %s", e)
                await asyncio.sleep(1)
                continue
            except BaseException:
                self._semaphore.release()
                raise
            if task_id is None:
                self._semaphore.release()
                continue
            handle = asyncio.create_task(self._run_one(task_id))
            self._in_flight.add(handle)
            handle.add_done_callback(self._in_flight.discard)

    async def _run_one(self, task_id: int):
        try:
            await self.process_task(task_id)
        except Exception as e:
            logger.error("Worker crashed on task %s: %s", task_id, e, exc_info=True)
        finally:
            self._semaphore.release()

    async def process_task(self, task_id: int):
        """Execute one dequeued task id to a terminal or retry state."""
        bind_task(task_id)
        try:
            task = await self._tasks.find(task_id)
            if task is None:
                logger.warning("Dequeued unknown task %s; dropping", task_id)
                return

            # Duplicate deliveries and unapproved tasks are absorbed here
            claimed = await self._tasks.transition(
                task_id, TaskStatus.PROCESSING, from_statuses={TaskStatus.PENDING_EXECUTION},
            )
            if not claimed:
                logger.info("Task %s is %s; skipping dequeued id", task_id, task.status.name)
                return
            task.status = TaskStatus.PROCESSING

            try:
                name, executor = select_executor(task, self._registry)
                update_task_context(remote_task_id=task.remote_task_id, executor=name)
                logger.info("Task %s running on executor %s", task_id, name)
                result = await executor.run(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Task %s execution error: %s", task_id, e)
                await handle_failure(
                    task=task, error=e, tasks=self._tasks,
                    queue=self._queue, accounting=self._accounting,
                )
                return

            await complete_task(task=task, result=result, tasks=self._tasks, registry=self._registry)
        finally:
            bind_task(None)
