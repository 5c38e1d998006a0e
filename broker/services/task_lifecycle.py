#  Generation Broker - Task Lifecycle
#
#  Terminal-transition logic shared by the worker pool and the polling
#  supervisor: executor selection, completion, retry and refund-on-failure.
#
#  Depends on: executors/registry.py, services/accounting.py, services/tasks.py,
#              services/task_queue.py
#  Used by:    services/worker_pool.py, services/polling.py

import logging

from broker.exceptions import NotFoundError, TransientIOError, ValidationError
from broker.executors.base import TaskExecutor
from broker.executors.registry import REMOTE_API, SIMULATED, VENDOR_API, ExecutorRegistry
from broker.models.records import Task

logger = logging.getLogger("broker.lifecycle")

# Deterministic failures: retrying cannot change the outcome
PERMANENT_ERRORS = (ValidationError, NotFoundError)


def executor_name_for(task: Task) -> str:
    """input.executor, else model -> vendor, else target_url -> generic, else simulated."""
    params = task.input
    name = params.get("executor")
    if isinstance(name, str) and name:
        return name
    if "model" in params:
        return VENDOR_API
    if params.get("target_url"):
        return REMOTE_API
    return SIMULATED


def select_executor(task: Task, registry: ExecutorRegistry) -> tuple[str, TaskExecutor]:
    name = executor_name_for(task)
    executor = registry.get(name)
    if executor is None:
        raise ValidationError(f"executor '{name}' is not registered")
    return name, executor


async def complete_task(*, task: Task, result: dict, tasks, registry: ExecutorRegistry) -> bool:
    """Run hooks, then write Completed unless the task was finalized in flight.

    Returns False when the Completed write was skipped (e.g. cancelled mid-run).
    """
    await registry.run_hooks(task, result)
    result_url = result.get("oss_url") or result.get("result_url") or ""
    if not await tasks.mark_completed(task.id, result_url):
        current = await tasks.find(task.id)
        logger.info(
            "Task %s finished remotely but is %s; keeping that status",
            task.id, current.status.name if current else "gone",
        )
        return False
    logger.info("Task %s completed", task.id)
    return True


async def fail_with_refund(*, task: Task, error_log: str, tasks, accounting) -> bool:
    """Failed + refund of the recorded cost. A failed refund is appended to error_log."""
    if not await tasks.mark_failed(task.id, error_log):
        logger.info("Task %s already finalized; not failing it", task.id)
        return False
    logger.warning("Task %s failed permanently: %s", task.id, error_log)

    if task.cost > 0:
        try:
            await accounting.refund(
                task.creator_id, task.cost, f"Refund for task {task.id} failure",
            )
        except Exception as e:
            logger.error("Refund for task %s failed: %s", task.id, e)
            await tasks.set_error_log(task.id, f"{error_log}; Refund failed: {e}")
    return True


async def handle_failure(*, task: Task, error: Exception, tasks, queue, accounting):
    """Retry with re-enqueue while budget remains, else fail and refund."""
    error_log = str(error) or type(error).__name__

    if isinstance(error, PERMANENT_ERRORS) or task.retry_count >= task.max_retries:
        await fail_with_refund(task=task, error_log=error_log, tasks=tasks, accounting=accounting)
        return

    if not await tasks.record_retry(task.id, error_log):
        logger.info("Task %s finalized during execution; not retrying", task.id)
        return
    logger.info(
        "Retrying task %s (attempt %d/%d): %s",
        task.id, task.retry_count + 1, task.max_retries, error_log,
    )
    try:
        await queue.push(task.id)
    except TransientIOError as e:
        logger.error("Task %s left in PendingExecution, re-enqueue failed: %s", task.id, e)
