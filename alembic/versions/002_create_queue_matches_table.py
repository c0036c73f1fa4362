"""create queue_matches table

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    queuematchstatus = sa.Enum(
        "pending", "processing", "completed", "failed",
        name="queuematchstatus",
    )
    queuematchstatus.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "queue_matches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "withdrawal_item_id", sa.String(36),
            sa.ForeignKey("queue_items.id"), nullable=False,
        ),
        sa.Column(
            "deposit_item_id", sa.String(36),
            sa.ForeignKey("queue_items.id"), nullable=False,
        ),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column(
            "status", ENUM(name="queuematchstatus", create_type=False),
            server_default="pending", nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "withdrawal_item_id", "deposit_item_id", name="uq_queue_matches_pair",
        ),
    )

    op.create_index("ix_queue_matches_withdrawal_item_id", "queue_matches", ["withdrawal_item_id"])
    op.create_index("ix_queue_matches_deposit_item_id", "queue_matches", ["deposit_item_id"])
    op.create_index("ix_queue_matches_status", "queue_matches", ["status"])


def downgrade() -> None:
    op.drop_index("ix_queue_matches_status", table_name="queue_matches")
    op.drop_index("ix_queue_matches_deposit_item_id", table_name="queue_matches")
    op.drop_index("ix_queue_matches_withdrawal_item_id", table_name="queue_matches")
    op.drop_table("queue_matches")
    sa.Enum(name="queuematchstatus").drop(op.get_bind(), checkfirst=True)
