#  Generation Broker - SQLAlchemy Table Metadata
#
#  Declarative Table definitions for Alembic autogenerate.
#  These mirror the SQLite schema but are NOT used at runtime;
#  the app still uses raw SQL via aiosqlite.
#
#  Depends on: (none)
#  Used by:    migrations/env.py (Alembic autogenerate)

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", Text, nullable=False, unique=True),
    Column("password_hash", Text),
    Column("role", Text, nullable=False, server_default="user"),
    Column("balance", Integer, nullable=False, server_default="0"),
    Column("credit_limit", Integer, nullable=False, server_default="0"),
    Column("total_consumed", Integer, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("activated_at", Float),
    Column("deactivated_at", Float),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    CheckConstraint("credit_limit >= 0", name="ck_users_credit_limit"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("balance_before", Integer, nullable=False),
    Column("balance_after", Integer, nullable=False),
    Column("reason", Text, nullable=False, server_default=""),
    Column("operator", Text, nullable=False, server_default=""),
    Column("operator_id", Integer, nullable=False, server_default="0"),
    Column("kind", Text, nullable=False),
    Column("ip_address", Text, server_default=""),
    Column("device_info", Text, server_default=""),
    Column("hash", Text, nullable=False),
    Column("created_at_ns", Integer, nullable=False),
)

ai_models = Table(
    "ai_models",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("url", Text, nullable=False, server_default=""),
    Column("price", Integer, nullable=False, server_default="0"),
    Column("status", Text, nullable=False, server_default="draft"),
    Column("parameters_json", Text, server_default="{}"),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    CheckConstraint("price >= 0", name="ck_ai_models_price"),
)

tasks = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("creator_id", Integer, nullable=False),
    Column("creator_name", Text, nullable=False, server_default=""),
    Column("status", Integer, nullable=False, server_default="1"),
    Column("input_json", Text, nullable=False, server_default="{}"),
    Column("result_url", Text, server_default=""),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("max_retries", Integer, nullable=False, server_default="3"),
    Column("error_log", Text, server_default=""),
    Column("remote_task_id", Text, server_default=""),
    Column("cost", Integer, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    CheckConstraint("cost >= 0", name="ck_tasks_cost"),
)

# Indexes
Index("idx_transactions_user", transactions.c.user_id, transactions.c.created_at_ns)
Index("idx_transactions_kind", transactions.c.kind)
Index("idx_ai_models_url", ai_models.c.url)
Index("idx_tasks_creator", tasks.c.creator_id)
Index("idx_tasks_status", tasks.c.status)
