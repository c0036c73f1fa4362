"""create customer_accounts and ledger_transactions tables

Revision ID: 004
Revises: 003
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "004"
down_revision = "003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "customer_accounts",
        sa.Column("customer_id", sa.String(64), primary_key=True),
        sa.Column("balance", sa.Numeric(18, 2), server_default="0", nullable=False),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.String(36), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )

    op.create_index("ix_ledger_transactions_customer_id", "ledger_transactions", ["customer_id"])
    op.create_index("ix_ledger_transactions_reference_id", "ledger_transactions", ["reference_id"])


def downgrade() -> None:
    op.drop_index("ix_ledger_transactions_reference_id", table_name="ledger_transactions")
    op.drop_index("ix_ledger_transactions_customer_id", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_table("customer_accounts")
