#  Generation Broker - Ledger
#
#  Append-only transaction log. Each entry is HMAC-SHA256 signed over its
#  canonical serialization; the table rejects UPDATE via trigger.
#  Reads: paginated filter query and a CSV export projection.
#
#  Depends on: config.py, db/connection.py, models/records.py, money.py
#  Used by:    services/accounting.py, routes/admin.py, container.py

import csv
import hashlib
import hmac
import io
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import aiosqlite

from broker.config import AUTH_SECRET_KEY, LEDGER_HASH_FALLBACK_SECRET
from broker.db.connection import Database
from broker.models.enums import TransactionKind
from broker.models.records import LedgerEntry
from broker.money import format_2, format_8, to_units

CSV_HEADER = [
    "ID", "Time", "User ID", "Type", "Amount", "Balance Before",
    "Balance After", "Reason", "Operator", "IP Address", "Device Info", "Hash",
]


@dataclass
class TransactionFilter:
    user_id: int | None = None
    kind: TransactionKind | None = None
    start_time: float | None = None   # unix seconds, inclusive
    end_time: float | None = None     # unix seconds, inclusive
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    page: int = 1
    limit: int = 20


def canonical_message(entry: LedgerEntry) -> str:
    return "|".join([
        str(entry.user_id),
        str(entry.created_at_ns),
        format_8(entry.amount),
        format_8(entry.balance_before),
        format_8(entry.balance_after),
        entry.reason,
        entry.operator,
        TransactionKind(entry.kind).value,
        str(entry.operator_id),
    ])


def compute_hash(entry: LedgerEntry, secret: str | None = None) -> str:
    key = (secret if secret is not None else AUTH_SECRET_KEY) or LEDGER_HASH_FALLBACK_SECRET
    return hmac.new(
        key.encode(), canonical_message(entry).encode(), hashlib.sha256,
    ).hexdigest()


def format_timestamp_ns(ns: int) -> str:
    """RFC 3339 UTC with up to nanosecond precision, trailing zeros trimmed."""
    seconds, frac = divmod(ns, 1_000_000_000)
    base = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    if frac:
        base += "." + f"{frac:09d}".rstrip("0")
    return base + "Z"


class LedgerService:
    """Writes and reads ledger entries. Writes only happen inside a caller's transaction."""

    def __init__(self, db: Database, secret: str | None = None):
        self._db = db
        self._secret = secret

    def hash(self, entry: LedgerEntry) -> str:
        return compute_hash(entry, self._secret)

    def verify(self, entry: LedgerEntry) -> bool:
        return hmac.compare_digest(entry.hash, self.hash(entry))

    async def append(self, conn: aiosqlite.Connection, entry: LedgerEntry) -> LedgerEntry:
        """Insert one entry, assigning a per-user strictly increasing timestamp."""
        cursor = await conn.execute(
            "SELECT MAX(created_at_ns) AS last_ns FROM transactions WHERE user_id = ?",
            (entry.user_id,),
        )
        row = await cursor.fetchone()
        now_ns = time.time_ns()
        last_ns = row["last_ns"] if row and row["last_ns"] is not None else 0
        entry.created_at_ns = max(now_ns, last_ns + 1)
        entry.hash = self.hash(entry)

        cursor = await conn.execute(
            "INSERT INTO transactions "
            "(user_id, amount, balance_before, balance_after, reason, operator, "
            "operator_id, kind, ip_address, device_info, hash, created_at_ns) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.user_id,
                to_units(entry.amount),
                to_units(entry.balance_before),
                to_units(entry.balance_after),
                entry.reason,
                entry.operator,
                entry.operator_id,
                TransactionKind(entry.kind).value,
                entry.ip_address,
                entry.device_info,
                entry.hash,
                entry.created_at_ns,
            ),
        )
        entry.id = cursor.lastrowid
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _where(flt: TransactionFilter) -> tuple[str, list]:
        clauses, params = [], []
        if flt.user_id is not None:
            clauses.append("user_id = ?")
            params.append(flt.user_id)
        if flt.kind is not None:
            clauses.append("kind = ?")
            params.append(TransactionKind(flt.kind).value)
        if flt.start_time is not None:
            clauses.append("created_at_ns >= ?")
            params.append(int(flt.start_time * 1_000_000_000))
        if flt.end_time is not None:
            clauses.append("created_at_ns <= ?")
            params.append(int(flt.end_time * 1_000_000_000))
        if flt.min_amount is not None:
            clauses.append("amount >= ?")
            params.append(to_units(flt.min_amount))
        if flt.max_amount is not None:
            clauses.append("amount <= ?")
            params.append(to_units(flt.max_amount))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def find(self, flt: TransactionFilter) -> tuple[list[LedgerEntry], int]:
        """Paginated entries, newest first, plus the unpaginated total."""
        where, params = self._where(flt)
        total_row = await self._db.fetchone(
            f"SELECT COUNT(*) AS cnt FROM transactions{where}", params,
        )
        page = max(1, flt.page)
        limit = max(1, flt.limit)
        rows = await self._db.fetchall(
            f"SELECT * FROM transactions{where} "
            "ORDER BY created_at_ns DESC, id DESC LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        return [LedgerEntry.from_row(r) for r in rows], total_row["cnt"]

    async def find_all(self, flt: TransactionFilter) -> list[LedgerEntry]:
        where, params = self._where(flt)
        rows = await self._db.fetchall(
            f"SELECT * FROM transactions{where} ORDER BY created_at_ns DESC, id DESC",
            params,
        )
        return [LedgerEntry.from_row(r) for r in rows]

    async def export_csv(self, flt: TransactionFilter) -> str:
        return to_csv(await self.find_all(flt))


def to_csv(entries: list[LedgerEntry]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for e in entries:
        writer.writerow([
            e.id,
            format_timestamp_ns(e.created_at_ns),
            e.user_id,
            TransactionKind(e.kind).value,
            format_2(e.amount),
            format_2(e.balance_before),
            format_2(e.balance_after),
            e.reason,
            e.operator,
            e.ip_address,
            e.device_info,
            e.hash,
        ])
    return buf.getvalue()
