#  Generation Broker - Pydantic Schemas
#
#  Request/response models for the REST API.
#  Money fields are Decimal and serialize as strings.
#
#  Depends on: models/enums.py, models/records.py
#  Used by:    routes/*

from decimal import Decimal

from pydantic import BaseModel, Field

from broker.models.enums import TaskStatus, TransactionKind, UserRole
from broker.models.records import Account, LedgerEntry, Task


# ---------------------------------------------------------------------------
# Auth / users
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=8, max_length=128)


class UserOut(BaseModel):
    id: int
    username: str
    role: UserRole
    balance: Decimal
    credit_limit: Decimal
    total_consumed: Decimal
    version: int
    is_active: bool
    created_at: float

    @classmethod
    def from_account(cls, account: Account) -> "UserOut":
        return cls(
            id=account.id,
            username=account.username,
            role=account.role,
            balance=account.balance,
            credit_limit=account.credit_limit,
            total_consumed=account.total_consumed,
            version=account.version,
            is_active=account.is_active,
            created_at=account.created_at,
        )


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class UserListOut(BaseModel):
    items: list[UserOut]
    total: int
    page: int
    limit: int


class AdminUserUpdate(BaseModel):
    version: int = Field(..., ge=1)
    username: str | None = Field(default=None, min_length=1, max_length=100)
    password: str | None = Field(default=None, min_length=8, max_length=128)
    role: UserRole | None = None
    credit_limit: Decimal | None = Field(default=None, ge=0)
    is_active: bool | None = None


class BalanceAdjust(BaseModel):
    amount: Decimal
    reason: str = Field(..., min_length=1, max_length=500)


class TopupRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(default="Manual top-up", max_length=500)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskCreate(BaseModel):
    input: dict


class TaskInputUpdate(BaseModel):
    input: dict


class TaskOut(BaseModel):
    id: int
    creator_id: int
    creator_name: str
    status: TaskStatus
    status_name: str
    input: dict
    cost: Decimal
    result_url: str = ""
    error_log: str = ""
    remote_task_id: str = ""
    retry_count: int
    max_retries: int
    created_at: float
    updated_at: float

    @classmethod
    def from_task(cls, task: Task) -> "TaskOut":
        return cls(
            id=task.id,
            creator_id=task.creator_id,
            creator_name=task.creator_name,
            status=task.status,
            status_name=task.status.name.lower(),
            input=task.input,
            cost=task.cost,
            result_url=task.result_url,
            error_log=task.error_log,
            remote_task_id=task.remote_task_id,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class TaskListOut(BaseModel):
    items: list[TaskOut]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class TransactionOut(BaseModel):
    id: int
    user_id: int
    kind: TransactionKind
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reason: str
    operator: str
    operator_id: int
    ip_address: str = ""
    device_info: str = ""
    created_at: float
    created_at_ns: int
    hash: str

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "TransactionOut":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            kind=entry.kind,
            amount=entry.amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            reason=entry.reason,
            operator=entry.operator,
            operator_id=entry.operator_id,
            ip_address=entry.ip_address,
            device_info=entry.device_info,
            created_at=entry.created_at,
            created_at_ns=entry.created_at_ns,
            hash=entry.hash,
        )


class TransactionListOut(BaseModel):
    items: list[TransactionOut]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

class ServicesOut(BaseModel):
    queue_depth: int
    workers_in_flight: int
    polling_tracked: int
    executors: list[str]
    failed_executors: list[str] = Field(default_factory=list)
