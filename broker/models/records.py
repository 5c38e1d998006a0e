#  Generation Broker - Domain Records
#
#  Dataclasses built from sqlite3.Row results. Money columns are stored
#  as integer units and converted to Decimal here.
#
#  Depends on: models/enums.py, money.py
#  Used by:    services/*, executors/*, routes/*

import json
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from broker.models.enums import ModelStatus, TaskStatus, TransactionKind, UserRole
from broker.money import from_units


@dataclass
class Account:
    id: int
    username: str
    role: UserRole
    balance: Decimal
    credit_limit: Decimal
    total_consumed: Decimal
    version: int
    is_active: bool
    created_at: float
    updated_at: float
    activated_at: float | None = None
    deactivated_at: float | None = None
    password_hash: str | None = field(default=None, repr=False)

    @property
    def available(self) -> Decimal:
        return self.balance + self.credit_limit

    @classmethod
    def from_row(cls, row) -> "Account":
        return cls(
            id=row["id"],
            username=row["username"],
            role=UserRole(row["role"]),
            balance=from_units(row["balance"]),
            credit_limit=from_units(row["credit_limit"]),
            total_consumed=from_units(row["total_consumed"]),
            version=row["version"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            activated_at=row["activated_at"],
            deactivated_at=row["deactivated_at"],
            password_hash=row["password_hash"],
        )

    def to_cache(self) -> dict:
        """JSON-safe snapshot for the user:<id> cache key (no password hash)."""
        data = asdict(self)
        data.pop("password_hash", None)
        data["role"] = self.role.value
        for key in ("balance", "credit_limit", "total_consumed"):
            data[key] = str(data[key])
        return data

    @classmethod
    def from_cache(cls, data: dict) -> "Account":
        return cls(
            id=data["id"],
            username=data["username"],
            role=UserRole(data["role"]),
            balance=Decimal(data["balance"]),
            credit_limit=Decimal(data["credit_limit"]),
            total_consumed=Decimal(data["total_consumed"]),
            version=data["version"],
            is_active=data["is_active"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            activated_at=data.get("activated_at"),
            deactivated_at=data.get("deactivated_at"),
        )


@dataclass
class LedgerEntry:
    user_id: int
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reason: str
    operator: str
    operator_id: int
    kind: TransactionKind
    created_at_ns: int = 0
    ip_address: str = ""
    device_info: str = ""
    hash: str = ""
    id: int | None = None

    @property
    def created_at(self) -> float:
        return self.created_at_ns / 1e9

    @classmethod
    def from_row(cls, row) -> "LedgerEntry":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            amount=from_units(row["amount"]),
            balance_before=from_units(row["balance_before"]),
            balance_after=from_units(row["balance_after"]),
            reason=row["reason"],
            operator=row["operator"],
            operator_id=row["operator_id"],
            kind=TransactionKind(row["kind"]),
            created_at_ns=row["created_at_ns"],
            ip_address=row["ip_address"] or "",
            device_info=row["device_info"] or "",
            hash=row["hash"],
        )


@dataclass
class Task:
    id: int
    creator_id: int
    creator_name: str
    status: TaskStatus
    input_json: str
    cost: Decimal
    retry_count: int
    max_retries: int
    created_at: float
    updated_at: float
    result_url: str = ""
    error_log: str = ""
    remote_task_id: str = ""

    @property
    def input(self) -> dict:
        """Decoded input blob. Executors decode; the core passes the text through."""
        if not self.input_json:
            return {}
        data = json.loads(self.input_json)
        return data if isinstance(data, dict) else {}

    @classmethod
    def from_row(cls, row) -> "Task":
        return cls(
            id=row["id"],
            creator_id=row["creator_id"],
            creator_name=row["creator_name"],
            status=TaskStatus(row["status"]),
            input_json=row["input_json"],
            cost=from_units(row["cost"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            result_url=row["result_url"] or "",
            error_log=row["error_log"] or "",
            remote_task_id=row["remote_task_id"] or "",
        )


@dataclass
class AIModel:
    id: int
    name: str
    url: str
    price: Decimal
    status: ModelStatus
    parameters: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "AIModel":
        return cls(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            price=from_units(row["price"]),
            status=ModelStatus(row["status"]),
            parameters=json.loads(row["parameters_json"]) if row["parameters_json"] else {},
        )
