"""create queue_items table

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    queueside = sa.Enum("withdrawal", "deposit", name="queueside")
    queueside.create(op.get_bind(), checkfirst=True)

    queueitemstatus = sa.Enum(
        "pending", "matched", "processing", "completed", "failed", "cancelled",
        name="queueitemstatus",
    )
    queueitemstatus.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "queue_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("side", ENUM(name="queueside", create_type=False), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("payment_method", sa.String(50), nullable=False),
        sa.Column("payment_details", sa.Text(), server_default="", nullable=False),
        sa.Column("priority", sa.Integer(), server_default="1", nullable=False),
        sa.Column(
            "status", ENUM(name="queueitemstatus", create_type=False),
            server_default="pending", nullable=False,
        ),
        sa.Column("matched_with", sa.String(36), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.CheckConstraint("amount > 0", name="ck_queue_items_amount_positive"),
    )

    op.create_index("ix_queue_items_customer_id", "queue_items", ["customer_id"])
    op.create_index("ix_queue_items_payment_method", "queue_items", ["payment_method"])
    op.create_index("ix_queue_items_status", "queue_items", ["status"])
    # Matching pool scan: opposite side, pending, same method
    op.create_index(
        "ix_queue_items_pool",
        "queue_items",
        ["side", "status", "payment_method", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_queue_items_pool", table_name="queue_items")
    op.drop_index("ix_queue_items_status", table_name="queue_items")
    op.drop_index("ix_queue_items_payment_method", table_name="queue_items")
    op.drop_index("ix_queue_items_customer_id", table_name="queue_items")
    op.drop_table("queue_items")
    sa.Enum(name="queueitemstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="queueside").drop(op.get_bind(), checkfirst=True)
