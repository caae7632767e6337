"""create transactions table

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


transaction_status = postgresql.ENUM(
    "pending",
    "processing",
    "success",
    "failed",
    name="transaction_status",
    create_type=False,
)


def upgrade() -> None:
    transaction_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("merchant_transaction_id", sa.String(length=64), nullable=False),
        sa.Column("total_diamond", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("no_wa", sa.String(length=32), nullable=False),
        sa.Column("target_id", sa.BigInteger(), nullable=False),
        sa.Column("status", transaction_status, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("total_diamond > 0", name="ck_transactions_total_diamond_positive"),
        sa.CheckConstraint("total_amount > 0", name="ck_transactions_total_amount_positive"),
    )
    op.create_index(
        "ix_transactions_merchant_transaction_id", "transactions", ["merchant_transaction_id"], unique=True
    )
    op.create_index("ix_transactions_status", "transactions", ["status"], unique=False)
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_transactions_created_at", table_name="transactions")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_merchant_transaction_id", table_name="transactions")
    op.drop_table("transactions")
    transaction_status.drop(op.get_bind(), checkfirst=True)
