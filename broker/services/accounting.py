#  Generation Broker - Accounting Engine
#
#  Atomic debit / credit / adjust / refund / topup over the account row and
#  the ledger. Each operation is one write transaction guarded by the row's
#  version; a version mismatch surfaces as OptimisticConflictError and is
#  never retried here.
#
#  Depends on: cache.py, db/connection.py, services/accounts.py,
#              services/ledger.py, models/records.py, money.py
#  Used by:    container.py, services/submission.py, services/task_lifecycle.py,
#              routes/admin.py

import logging
import time
from dataclasses import dataclass
from decimal import Decimal

import aiosqlite

from broker.cache import Cache
from broker.db.connection import Database
from broker.exceptions import InsufficientFundsError, OptimisticConflictError, ValidationError
from broker.models.enums import TransactionKind
from broker.models.records import Account, LedgerEntry
from broker.money import to_decimal, to_units
from broker.services.accounts import AccountStore
from broker.services.ledger import LedgerService

logger = logging.getLogger("broker.accounting")

_ZERO = Decimal("0")


@dataclass
class TransactionMeta:
    """Who/what/where for a ledger entry. operator_id 0 means the system."""

    operator: str = "system"
    operator_id: int = 0
    kind: TransactionKind = TransactionKind.SYSTEM_AUTO
    ip_address: str = ""
    device_info: str = ""


SYSTEM_REFUND = TransactionMeta(operator="system", operator_id=0, kind=TransactionKind.USER_REFUND)


class AccountingEngine:
    """Balance arithmetic composed from AccountStore reads and LedgerService appends."""

    def __init__(self, db: Database, cache: Cache, ledger: LedgerService):
        self._db = db
        self._cache = cache
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Core write path
    # ------------------------------------------------------------------

    async def _apply(
        self,
        conn: aiosqlite.Connection,
        user_id: int,
        delta: Decimal,
        reason: str,
        meta: TransactionMeta,
        *,
        consumed_delta: Decimal = _ZERO,
        require_funds: bool = False,
        deactivate_on_zero: bool = False,
    ) -> Account:
        account = await AccountStore.load_in_tx(conn, user_id)
        v0 = account.version

        if require_funds and account.available < -delta:
            raise InsufficientFundsError(
                f"Insufficient balance: available {account.available}, required {-delta}"
            )

        balance_after = account.balance + delta
        consumed_after = account.total_consumed + consumed_delta
        now = time.time()

        sets = ["balance = ?", "total_consumed = ?", "version = ?", "updated_at = ?"]
        params: list = [to_units(balance_after), to_units(consumed_after), v0 + 1, now]
        if deactivate_on_zero and balance_after == _ZERO:
            sets.extend(["is_active = 0", "deactivated_at = ?"])
            params.append(now)

        cursor = await conn.execute(
            f"UPDATE users SET {', '.join(sets)} WHERE id = ? AND version = ?",
            (*params, user_id, v0),
        )
        if cursor.rowcount == 0:
            raise OptimisticConflictError(
                f"User {user_id} was modified concurrently (expected version {v0})"
            )

        await self._ledger.append(conn, LedgerEntry(
            user_id=user_id,
            amount=delta,
            balance_before=account.balance,
            balance_after=balance_after,
            reason=reason,
            operator=meta.operator,
            operator_id=meta.operator_id,
            kind=meta.kind,
            ip_address=meta.ip_address,
            device_info=meta.device_info,
        ))

        if deactivate_on_zero and balance_after == _ZERO:
            logger.info("User %s auto-deactivated at zero balance", user_id)
        return await AccountStore.load_in_tx(conn, user_id)

    async def _run(self, user_id: int, op) -> Account:
        async with self._db.transaction() as conn:
            account = await op(conn)
        await self._cache.invalidate_user(user_id)
        return account

    @staticmethod
    def _positive(amount) -> Decimal:
        value = to_decimal(amount)
        if value <= _ZERO:
            raise ValidationError("Amount must be positive")
        return value

    # ------------------------------------------------------------------
    # Debit
    # ------------------------------------------------------------------

    async def debit_tx(
        self,
        conn: aiosqlite.Connection,
        user_id: int,
        amount,
        reason: str,
        meta: TransactionMeta | None = None,
    ) -> Account:
        """Debit inside the caller's transaction. The caller invalidates the cache after commit."""
        value = self._positive(amount)
        meta = meta or TransactionMeta(kind=TransactionKind.USER_CONSUME)
        return await self._apply(
            conn, user_id, -value, reason, meta,
            consumed_delta=value, require_funds=True,
        )

    async def debit(self, user_id: int, amount, reason: str, meta: TransactionMeta | None = None) -> Account:
        value = self._positive(amount)
        account = await self._run(
            user_id, lambda conn: self.debit_tx(conn, user_id, value, reason, meta),
        )
        logger.info("Debited %s from user %s (%s)", value, user_id, reason)
        return account

    # ------------------------------------------------------------------
    # Credit family
    # ------------------------------------------------------------------

    async def credit(self, user_id: int, amount, reason: str, meta: TransactionMeta | None = None) -> Account:
        """Positive credit. Reaching exactly zero deactivates; refunds reduce total_consumed."""
        value = self._positive(amount)
        meta = meta or TransactionMeta()
        consumed = -value if meta.kind == TransactionKind.USER_REFUND else _ZERO
        account = await self._run(user_id, lambda conn: self._apply(
            conn, user_id, value, reason, meta,
            consumed_delta=consumed, deactivate_on_zero=True,
        ))
        logger.info("Credited %s to user %s (%s, kind=%s)", value, user_id, reason, meta.kind.value)
        return account

    async def adjust(self, user_id: int, amount, reason: str, meta: TransactionMeta | None = None) -> Account:
        """Admin adjustment; amount may be negative and is not checked against funds."""
        value = to_decimal(amount)
        if value == _ZERO:
            raise ValidationError("Amount must be non-zero")
        meta = meta or TransactionMeta(kind=TransactionKind.ADMIN_ADJUSTMENT)
        consumed = -value if value < _ZERO else _ZERO
        account = await self._run(user_id, lambda conn: self._apply(
            conn, user_id, value, reason, meta,
            consumed_delta=consumed, deactivate_on_zero=True,
        ))
        logger.info("Adjusted user %s by %s (%s) operator=%s", user_id, value, reason, meta.operator)
        return account

    async def refund(self, user_id: int, amount, reason: str) -> Account:
        return await self.credit(user_id, amount, reason, SYSTEM_REFUND)

    async def topup(
        self,
        user_id: int,
        amount,
        reason: str,
        meta: TransactionMeta | None = None,
        *,
        manual: bool = False,
    ) -> Account:
        """Order completion: gateway callback (user_topup) or admin manual completion (manual_topup)."""
        meta = meta or TransactionMeta()
        meta = TransactionMeta(
            operator=meta.operator,
            operator_id=meta.operator_id,
            kind=TransactionKind.MANUAL_TOPUP if manual else TransactionKind.USER_TOPUP,
            ip_address=meta.ip_address,
            device_info=meta.device_info,
        )
        return await self.credit(user_id, amount, reason, meta)
