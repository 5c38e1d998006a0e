#  Generation Broker - Account Store
#
#  CRUD on accounts with optimistic versioning. Balance columns are only
#  written by the accounting engine; apply_update handles profile fields.
#
#  Depends on: cache.py, config.py, db/connection.py, models/records.py, money.py
#  Used by:    container.py, services/accounting.py, services/auth.py, routes/admin.py

import logging
import time
from dataclasses import dataclass

import aiosqlite
import bcrypt

from broker.cache import Cache, user_key
from broker.config import CACHE_USER_TTL
from broker.db.connection import Database
from broker.exceptions import NotFoundError, OptimisticConflictError, ValidationError
from broker.models.enums import UserRole
from broker.models.records import Account
from broker.money import to_units

logger = logging.getLogger("broker.accounts")

_PATCHABLE = {"username", "password", "role", "credit_limit", "is_active"}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode(), hashed.encode())


@dataclass
class AccountFilter:
    is_active: bool | None = None
    created_after: float | None = None
    created_before: float | None = None
    page: int = 1
    limit: int = 20


class AccountStore:
    """Reads and profile writes for the users table."""

    def __init__(self, db: Database, cache: Cache):
        self._db = db
        self._cache = cache

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: int) -> Account:
        row = await self._db.fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return Account.from_row(row)

    async def get_by_username(self, username: str) -> Account | None:
        row = await self._db.fetchone("SELECT * FROM users WHERE username = ?", (username,))
        return Account.from_row(row) if row else None

    async def get_cached(self, user_id: int) -> Account:
        """Snapshot that may be stale by up to the cache TTL. Never use for money decisions."""
        data = await self._cache.get_json(user_key(user_id))
        if data is not None:
            return Account.from_cache(data)
        account = await self.get(user_id)
        await self._cache.set_json(user_key(user_id), account.to_cache(), CACHE_USER_TTL)
        return account

    @staticmethod
    async def load_in_tx(conn: aiosqlite.Connection, user_id: int) -> Account:
        """Read the row through the caller's write transaction."""
        cursor = await conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return Account.from_row(row)

    async def find(self, flt: AccountFilter) -> tuple[list[Account], int]:
        clauses, params = [], []
        if flt.is_active is not None:
            clauses.append("is_active = ?")
            params.append(1 if flt.is_active else 0)
        if flt.created_after is not None:
            clauses.append("created_at >= ?")
            params.append(flt.created_after)
        if flt.created_before is not None:
            clauses.append("created_at <= ?")
            params.append(flt.created_before)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        total = await self._db.fetchone(f"SELECT COUNT(*) AS cnt FROM users{where}", params)
        page = max(1, flt.page)
        limit = max(1, flt.limit)
        rows = await self._db.fetchall(
            f"SELECT * FROM users{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        return [Account.from_row(r) for r in rows], total["cnt"]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        username: str,
        password: str,
        *,
        role: UserRole = UserRole.USER,
        balance=0,
        credit_limit=0,
        first_user_admin: bool = False,
    ) -> Account:
        """Insert an active account.

        With first_user_admin, an empty users table promotes this account to
        admin; the count runs inside the write transaction.
        """
        if not username:
            raise ValidationError("username is required")
        if to_units(credit_limit) < 0:
            raise ValidationError("credit_limit must be >= 0")
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute("SELECT id FROM users WHERE username = ?", (username,))
            if await cursor.fetchone():
                raise ValidationError(f"Username '{username}' is already taken")
            if first_user_admin:
                cursor = await conn.execute("SELECT COUNT(*) FROM users")
                if (await cursor.fetchone())[0] == 0:
                    role = UserRole.ADMIN
            cursor = await conn.execute(
                "INSERT INTO users (username, password_hash, role, balance, credit_limit, "
                "total_consumed, version, is_active, activated_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, 0, 1, 1, ?, ?, ?)",
                (
                    username, hash_password(password), UserRole(role).value,
                    to_units(balance), to_units(credit_limit), now, now, now,
                ),
            )
            user_id = cursor.lastrowid
        logger.info("Account created: %s (id=%s, role=%s)", username, user_id, UserRole(role).value)
        return await self.get(user_id)

    async def apply_update(self, user_id: int, patch: dict, expected_version: int) -> Account:
        """Sparse update guarded by the caller's observed version.

        is_active also stamps activated_at / deactivated_at; password is bcrypt-hashed.
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

        now = time.time()
        sets, params = [], []
        if "username" in patch:
            if not patch["username"]:
                raise ValidationError("username must not be empty")
            sets.append("username = ?")
            params.append(patch["username"])
        if "password" in patch:
            sets.append("password_hash = ?")
            params.append(hash_password(patch["password"]))
        if "role" in patch:
            sets.append("role = ?")
            params.append(UserRole(patch["role"]).value)
        if "credit_limit" in patch:
            units = to_units(patch["credit_limit"])
            if units < 0:
                raise ValidationError("credit_limit must be >= 0")
            sets.append("credit_limit = ?")
            params.append(units)
        if "is_active" in patch:
            if patch["is_active"]:
                sets.extend(["is_active = 1", "activated_at = ?", "deactivated_at = NULL"])
            else:
                sets.extend(["is_active = 0", "deactivated_at = ?"])
            params.append(now)

        sets.extend(["version = version + 1", "updated_at = ?"])
        params.append(now)

        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE users SET {', '.join(sets)} WHERE id = ? AND version = ?",
                (*params, user_id, expected_version),
            )
            if cursor.rowcount == 0:
                exists = await (await conn.execute(
                    "SELECT 1 FROM users WHERE id = ?", (user_id,)
                )).fetchone()
                if not exists:
                    raise NotFoundError(f"User {user_id} not found")
                raise OptimisticConflictError(
                    f"User {user_id} was modified concurrently (expected version {expected_version})"
                )

        await self._cache.invalidate_user(user_id)
        return await self.get(user_id)

    async def delete(self, user_id: int):
        """Remove an account; its ledger entries cascade."""
        cursor = await self._db.execute_write("DELETE FROM users WHERE id = ?", (user_id,))
        if cursor.rowcount == 0:
            raise NotFoundError(f"User {user_id} not found")
        await self._cache.invalidate_user(user_id)
        logger.info("Account %s deleted", user_id)
