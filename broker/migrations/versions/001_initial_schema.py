"""Initial schema: users, transactions, ai_models, tasks.

Revision ID: 001
Revises: None
Create Date: 2026-09-14
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.Text, nullable=False, unique=True),
        sa.Column("password_hash", sa.Text),
        sa.Column("role", sa.Text, nullable=False, server_default="user"),
        sa.Column("balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("credit_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_consumed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_active", sa.Integer, nullable=False, server_default="1"),
        sa.Column("activated_at", sa.Float),
        sa.Column("deactivated_at", sa.Float),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("updated_at", sa.Float, nullable=False),
        sa.CheckConstraint("credit_limit >= 0", name="ck_users_credit_limit"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("balance_before", sa.Integer, nullable=False),
        sa.Column("balance_after", sa.Integer, nullable=False),
        sa.Column("reason", sa.Text, nullable=False, server_default=""),
        sa.Column("operator", sa.Text, nullable=False, server_default=""),
        sa.Column("operator_id", sa.Integer, nullable=False, server_default="0"),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("ip_address", sa.Text, server_default=""),
        sa.Column("device_info", sa.Text, server_default=""),
        sa.Column("hash", sa.Text, nullable=False),
        sa.Column("created_at_ns", sa.Integer, nullable=False),
    )

    op.create_table(
        "ai_models",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("url", sa.Text, nullable=False, server_default=""),
        sa.Column("price", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.Text, nullable=False, server_default="draft"),
        sa.Column("parameters_json", sa.Text, server_default="{}"),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("updated_at", sa.Float, nullable=False),
        sa.CheckConstraint("price >= 0", name="ck_ai_models_price"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("creator_id", sa.Integer, nullable=False),
        sa.Column("creator_name", sa.Text, nullable=False, server_default=""),
        sa.Column("status", sa.Integer, nullable=False, server_default="1"),
        sa.Column("input_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("result_url", sa.Text, server_default=""),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("error_log", sa.Text, server_default=""),
        sa.Column("remote_task_id", sa.Text, server_default=""),
        sa.Column("cost", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("updated_at", sa.Float, nullable=False),
        sa.CheckConstraint("cost >= 0", name="ck_tasks_cost"),
    )

    op.create_index("idx_transactions_user", "transactions", ["user_id", "created_at_ns"])
    op.create_index("idx_transactions_kind", "transactions", ["kind"])
    op.create_index("idx_ai_models_url", "ai_models", ["url"])
    op.create_index("idx_tasks_creator", "tasks", ["creator_id"])
    op.create_index("idx_tasks_status", "tasks", ["status"])


def downgrade() -> None:
    op.drop_index("idx_tasks_status", table_name="tasks")
    op.drop_index("idx_tasks_creator", table_name="tasks")
    op.drop_index("idx_ai_models_url", table_name="ai_models")
    op.drop_index("idx_transactions_kind", table_name="transactions")
    op.drop_index("idx_transactions_user", table_name="transactions")
    op.drop_table("tasks")
    op.drop_table("ai_models")
    op.drop_table("transactions")
    op.drop_table("users")
