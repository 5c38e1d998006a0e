#  Generation Broker - Task Store
#
#  Durable task records: insert, lookup, paged listing, stuck-task query,
#  and the narrow status/result writers used by the worker pool and the
#  polling supervisor.
#
#  Depends on: db/connection.py, models/records.py, money.py
#  Used by:    container.py, services/submission.py, services/task_lifecycle.py,
#              services/worker_pool.py, services/polling.py, executors/*

import json
import time

import aiosqlite

from broker.config import DEFAULT_MAX_RETRIES
from broker.db.connection import Database
from broker.exceptions import InvalidStateError, NotFoundError
from broker.models.enums import TaskStatus
from broker.models.records import Task
from broker.money import to_units


class TaskStore:
    def __init__(self, db: Database):
        self._db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, task_id: int) -> Task:
        row = await self._db.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if not row:
            raise NotFoundError(f"Task {task_id} not found")
        return Task.from_row(row)

    async def find(self, task_id: int) -> Task | None:
        row = await self._db.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return Task.from_row(row) if row else None

    async def list_page(
        self,
        *,
        creator_id: int | None = None,
        status: TaskStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Task], int]:
        clauses, params = [], []
        if creator_id is not None:
            clauses.append("creator_id = ?")
            params.append(creator_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(int(status))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        total = await self._db.fetchone(f"SELECT COUNT(*) AS cnt FROM tasks{where}", params)
        page = max(1, page)
        limit = max(1, limit)
        rows = await self._db.fetchall(
            f"SELECT * FROM tasks{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        return [Task.from_row(r) for r in rows], total["cnt"]

    async def stuck(self) -> list[Task]:
        """Every task persisted as Processing, regardless of age."""
        return await self.with_status(TaskStatus.PROCESSING)

    async def with_status(self, status: TaskStatus) -> list[Task]:
        rows = await self._db.fetchall(
            "SELECT * FROM tasks WHERE status = ? ORDER BY id", (int(status),),
        )
        return [Task.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    async def insert(
        conn: aiosqlite.Connection,
        *,
        creator_id: int,
        creator_name: str,
        input_json: str,
        cost,
        status: TaskStatus,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> int:
        """Insert inside the caller's transaction; returns the new id."""
        now = time.time()
        cursor = await conn.execute(
            "INSERT INTO tasks (creator_id, creator_name, status, input_json, cost, "
            "max_retries, retry_count, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)",
            (creator_id, creator_name, int(status), input_json, to_units(cost),
             max_retries, now, now),
        )
        return cursor.lastrowid

    async def update_input(self, task_id: int, new_input: dict) -> Task:
        """Replace the input blob. Rejected once the task reached Processing."""
        cursor = await self._db.execute_write(
            "UPDATE tasks SET input_json = ?, updated_at = ? WHERE id = ? AND status < ?",
            (json.dumps(new_input), time.time(), task_id, int(TaskStatus.PROCESSING)),
        )
        if cursor.rowcount == 0:
            task = await self.get(task_id)
            raise InvalidStateError(
                f"Task {task_id} cannot be updated in status {task.status.name}"
            )
        return await self.get(task_id)

    async def transition(
        self, task_id: int, to_status: TaskStatus, *, from_statuses: set[TaskStatus] | None = None,
    ) -> bool:
        """Compare-and-set status. Returns False when the current status is not allowed."""
        sql = "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?"
        params: list = [int(to_status), time.time(), task_id]
        if from_statuses:
            sql += f" AND status IN ({','.join('?' * len(from_statuses))})"
            params.extend(int(s) for s in from_statuses)
        cursor = await self._db.execute_write(sql, params)
        return cursor.rowcount > 0

    async def set_remote_task_id(self, task_id: int, remote_task_id: str):
        await self._db.execute_write(
            "UPDATE tasks SET remote_task_id = ?, updated_at = ? WHERE id = ?",
            (remote_task_id, time.time(), task_id),
        )

    async def mark_completed(self, task_id: int, result_url: str) -> bool:
        """Completed unless the task was cancelled (or otherwise finalized) in flight."""
        cursor = await self._db.execute_write(
            "UPDATE tasks SET status = ?, result_url = ?, updated_at = ? "
            "WHERE id = ? AND status NOT IN (?, ?, ?)",
            (int(TaskStatus.COMPLETED), result_url, time.time(), task_id,
             int(TaskStatus.COMPLETED), int(TaskStatus.FAILED), int(TaskStatus.CANCELLED)),
        )
        return cursor.rowcount > 0

    async def record_retry(self, task_id: int, error_log: str) -> bool:
        """Bump retry_count and rewind to PendingExecution. Skipped for terminal tasks."""
        cursor = await self._db.execute_write(
            "UPDATE tasks SET status = ?, retry_count = retry_count + 1, error_log = ?, "
            "updated_at = ? WHERE id = ? AND status NOT IN (?, ?, ?)",
            (int(TaskStatus.PENDING_EXECUTION), error_log, time.time(), task_id,
             int(TaskStatus.COMPLETED), int(TaskStatus.FAILED), int(TaskStatus.CANCELLED)),
        )
        return cursor.rowcount > 0

    async def mark_failed(self, task_id: int, error_log: str) -> bool:
        cursor = await self._db.execute_write(
            "UPDATE tasks SET status = ?, error_log = ?, updated_at = ? "
            "WHERE id = ? AND status NOT IN (?, ?, ?)",
            (int(TaskStatus.FAILED), error_log, time.time(), task_id,
             int(TaskStatus.COMPLETED), int(TaskStatus.FAILED), int(TaskStatus.CANCELLED)),
        )
        return cursor.rowcount > 0

    async def set_error_log(self, task_id: int, error_log: str):
        await self._db.execute_write(
            "UPDATE tasks SET error_log = ?, updated_at = ? WHERE id = ?",
            (error_log, time.time(), task_id),
        )

    async def reset_for_retry(self, task_id: int) -> bool:
        """Failed -> PendingExecution with counters, results and the remote id cleared."""
        cursor = await self._db.execute_write(
            "UPDATE tasks SET status = ?, retry_count = 0, error_log = '', result_url = '', "
            "remote_task_id = '', "
            "updated_at = ? WHERE id = ? AND status = ?",
            (int(TaskStatus.PENDING_EXECUTION), time.time(), task_id, int(TaskStatus.FAILED)),
        )
        return cursor.rowcount > 0
