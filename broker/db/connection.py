#  Generation Broker - Database Connection
#
#  Async SQLite manager with WAL mode and transaction support.
#  Production uses Alembic migrations; tests use inline schema for speed.
#  Money columns are INTEGER units of 1e-8 (see money.py).
#
#  Depends on: broker/db/migrate.py (optional, for production migrations)
#  Used by:    container.py (via DI), services/*, tests

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

logger = logging.getLogger("broker.db")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    balance INTEGER NOT NULL DEFAULT 0,
    credit_limit INTEGER NOT NULL DEFAULT 0 CHECK (credit_limit >= 0),
    total_consumed INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    is_active INTEGER NOT NULL DEFAULT 1,
    activated_at REAL,
    deactivated_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    amount INTEGER NOT NULL,
    balance_before INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    operator TEXT NOT NULL DEFAULT '',
    operator_id INTEGER NOT NULL DEFAULT 0,
    kind TEXT NOT NULL,
    ip_address TEXT DEFAULT '',
    device_info TEXT DEFAULT '',
    hash TEXT NOT NULL,
    created_at_ns INTEGER NOT NULL
);

CREATE TRIGGER IF NOT EXISTS transactions_immutable
BEFORE UPDATE ON transactions
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are immutable');
END;

CREATE TABLE IF NOT EXISTS ai_models (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    url TEXT NOT NULL DEFAULT '',
    price INTEGER NOT NULL DEFAULT 0 CHECK (price >= 0),
    status TEXT NOT NULL DEFAULT 'draft',
    parameters_json TEXT DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    creator_name TEXT NOT NULL DEFAULT '',
    status INTEGER NOT NULL DEFAULT 1,
    input_json TEXT NOT NULL DEFAULT '{}',
    result_url TEXT DEFAULT '',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_log TEXT DEFAULT '',
    remote_task_id TEXT DEFAULT '',
    cost INTEGER NOT NULL DEFAULT 0 CHECK (cost >= 0),
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, created_at_ns);
CREATE INDEX IF NOT EXISTS idx_transactions_kind ON transactions(kind);
CREATE INDEX IF NOT EXISTS idx_ai_models_url ON ai_models(url);
CREATE INDEX IF NOT EXISTS idx_tasks_creator ON tasks(creator_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
"""


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------

class Database:
    """Async SQLite database with WAL mode.

    Uses aiosqlite which runs SQLite on a dedicated background thread,
    so no threading.Lock is needed on our side.
    """

    def __init__(self):
        self._conn: aiosqlite.Connection | None = None
        self._path: Path | None = None
        self._in_transaction: bool = False
        self._tx_lock: asyncio.Lock = asyncio.Lock()
        self._tx_owner: asyncio.Task | None = None

    async def init(self, db_path: str | Path, *, run_migrations: bool = False):
        """Open or create the database and apply schema.

        Args:
            db_path: Path to the SQLite database file.
            run_migrations: If True, use Alembic migrations (production).
                            If False, use inline schema (tests, faster).

        Stuck-task recovery is not done here; the polling supervisor owns it
        because Processing tasks may still have a live remote job.
        """
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if run_migrations:
            from broker.db.migrate import run_migrations as _migrate
            await asyncio.to_thread(_migrate, self._path)

        self._conn = await aiosqlite.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        if not run_migrations:
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()

        logger.info("Database initialized at %s", self._path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call await db.init() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self):
        """Atomic read+write transaction. Rolls back on exception.

        Uses BEGIN IMMEDIATE to acquire a write lock upfront, preventing
        other writers from interleaving. An asyncio.Lock serializes
        concurrent coroutines sharing the same connection, so a second
        coroutine waits until the first transaction commits/rolls back.

        Safe to nest within the same task: if the current asyncio task
        already owns a transaction, inner calls are no-ops. Different
        tasks wait on the lock.
        """
        current = asyncio.current_task()
        if self._in_transaction and self._tx_owner is current:
            yield self.conn
            return

        async with self._tx_lock:
            self._in_transaction = True
            self._tx_owner = current
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self.conn
                    await self.conn.commit()
                except BaseException:
                    await self.conn.rollback()
                    raise
            finally:
                self._in_transaction = False
                self._tx_owner = None

    async def execute_write(self, sql: str, params: tuple | list = ()) -> aiosqlite.Cursor:
        """Execute a write query and commit.

        Inside a transaction() block, participates in the outer transaction
        (no auto-commit). Outside, waits for any open transaction and
        auto-commits.
        """
        if self._in_transaction and self._tx_owner is asyncio.current_task():
            return await self.conn.execute(sql, params)
        async with self._tx_lock:
            cursor = await self.conn.execute(sql, params)
            await self.conn.commit()
            return cursor

    async def fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchall()

    async def close(self):
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
