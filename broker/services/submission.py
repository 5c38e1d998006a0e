#  Generation Broker - Submission Facade
#
#  Single entry point for creating and steering tasks: price lookup,
#  debit, persist and enqueue in one place, plus the user/admin state
#  changes (approve, cancel, retry, input edits).
#
#  Depends on: config.py, db/connection.py, services/accounting.py,
#              services/ai_models.py, services/tasks.py, services/task_queue.py
#  Used by:    container.py, routes/tasks.py, routes/admin.py

import json
import logging

from broker.config import AUTO_AUDIT, DEFAULT_MAX_RETRIES
from broker.exceptions import (
    InvalidStateError,
    PermissionDeniedError,
    TransientIOError,
    ValidationError,
)
from broker.models.enums import TaskStatus, TransactionKind
from broker.models.records import Task
from broker.services.accounting import TransactionMeta

logger = logging.getLogger("broker.submission")


def _coerce_id(value) -> int:
    """Positive int from a JSON number or numeric string, else 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else 0
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return 0
        return parsed if parsed > 0 else 0
    return 0


class SubmissionService:
    """Prices, charges, persists and enqueues tasks."""

    def __init__(self, db, tasks, models, accounting, queue, cache, *, auto_audit: bool = AUTO_AUDIT):
        self._db = db
        self._tasks = tasks
        self._models = models
        self._accounting = accounting
        self._queue = queue
        self._cache = cache
        self._auto_audit = auto_audit

    async def _resolve_model_id(self, params: dict) -> int:
        model_id = _coerce_id(params.get("model_id")) or _coerce_id(params.get("modelId"))
        if model_id:
            return model_id
        model = params.get("model")
        if isinstance(model, dict):
            found = await self._models.find_by_url(model.get("model_url") or "")
            if found:
                return found.id
        raise ValidationError("model_id is required")

    async def submit(self, params: dict, creator_id: int, creator_name: str) -> Task:
        """Charge the model price and create the task.

        The debit and the insert commit together. The queue push happens
        after commit; if it fails the task stays PendingExecution and
        start-up recovery enqueues it.
        """
        if not isinstance(params, dict):
            raise ValidationError("input must be a JSON object")
        model = await self._models.get(await self._resolve_model_id(params))
        status = TaskStatus.PENDING_EXECUTION if self._auto_audit else TaskStatus.PENDING_AUDIT

        async with self._db.transaction() as conn:
            if model.price > 0:
                await self._accounting.debit_tx(
                    conn, creator_id, model.price,
                    f"Create task for model: {model.name}",
                    TransactionMeta(operator="system", operator_id=0, kind=TransactionKind.USER_CONSUME),
                )
            task_id = await self._tasks.insert(
                conn,
                creator_id=creator_id,
                creator_name=creator_name,
                input_json=json.dumps(params),
                cost=model.price,
                status=status,
                max_retries=DEFAULT_MAX_RETRIES,
            )

        await self._cache.invalidate_user(creator_id)
        logger.info(
            "Task %s submitted by user %s for model %s (cost %s, %s)",
            task_id, creator_id, model.name, model.price, status.name,
        )
        if status == TaskStatus.PENDING_EXECUTION:
            await self._enqueue(task_id)
        return await self._tasks.get(task_id)

    async def approve(self, task_id: int) -> Task:
        if not await self._tasks.transition(
            task_id, TaskStatus.PENDING_EXECUTION, from_statuses={TaskStatus.PENDING_AUDIT},
        ):
            await self._tasks.get(task_id)
            raise InvalidStateError("task is not pending audit")
        logger.info("Task %s approved", task_id)
        await self._enqueue(task_id)
        return await self._tasks.get(task_id)

    async def _owned(self, task_id: int, user_id: int) -> Task:
        task = await self._tasks.get(task_id)
        if task.creator_id != user_id:
            raise PermissionDeniedError(f"You do not own task {task_id}")
        return task

    async def cancel(self, task_id: int, user_id: int) -> Task:
        """Mark Cancelled. A running executor is not interrupted and no refund is issued."""
        await self._owned(task_id, user_id)
        if not await self._tasks.transition(
            task_id, TaskStatus.CANCELLED,
            from_statuses={TaskStatus.PENDING_AUDIT, TaskStatus.PENDING_EXECUTION, TaskStatus.PROCESSING},
        ):
            raise InvalidStateError("task cannot be cancelled in its current state")
        logger.info("Task %s cancelled by user %s", task_id, user_id)
        return await self._tasks.get(task_id)

    async def retry(self, task_id: int, user_id: int) -> Task:
        """Re-run a Failed task without charging again."""
        await self._owned(task_id, user_id)
        if not await self._tasks.reset_for_retry(task_id):
            raise InvalidStateError("task is not in a failed state")
        logger.info("Task %s reset for retry by user %s", task_id, user_id)
        await self._enqueue(task_id)
        return await self._tasks.get(task_id)

    async def update_input(self, task_id: int, user_id: int, params: dict) -> Task:
        if not isinstance(params, dict):
            raise ValidationError("input must be a JSON object")
        await self._owned(task_id, user_id)
        return await self._tasks.update_input(task_id, params)

    async def _enqueue(self, task_id: int):
        try:
            await self._queue.push(task_id)
        except TransientIOError as e:
            logger.error("Task %s persisted but not enqueued (recovery will retry): %s", task_id, e)
