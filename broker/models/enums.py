#  Generation Broker - Enums
#
#  Status and type enumerations used across the system.
#
#  Depends on: (none)
#  Used by:    models/records.py, models/schemas.py, services/*, routes/*

from enum import Enum, IntEnum


class TaskStatus(IntEnum):
    # Numeric order matters: status >= PROCESSING freezes the input
    PENDING_AUDIT = 1
    PENDING_EXECUTION = 2
    PROCESSING = 3
    COMPLETED = 4
    FAILED = 5
    CANCELLED = 6

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TransactionKind(str, Enum):
    ADMIN_ADJUSTMENT = "admin_adjustment"
    SYSTEM_AUTO = "system_auto"
    USER_CONSUME = "user_consume"
    USER_REFUND = "user_refund"
    USER_TOPUP = "user_topup"
    MANUAL_TOPUP = "manual_topup"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class ModelStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    DRAFT = "draft"
