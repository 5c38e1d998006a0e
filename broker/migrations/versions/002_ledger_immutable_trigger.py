"""Reject UPDATE on ledger rows.

Revision ID: 002
Revises: 001
Create Date: 2026-09-21
"""
from typing import Sequence, Union

from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute(
        "CREATE TRIGGER IF NOT EXISTS transactions_immutable "
        "BEFORE UPDATE ON transactions "
        "BEGIN SELECT RAISE(ABORT, 'ledger entries are immutable'); END;"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS transactions_immutable")
