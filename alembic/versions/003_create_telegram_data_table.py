"""create telegram_data table

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "telegram_data",
        sa.Column(
            "queue_item_id", sa.String(36),
            sa.ForeignKey("queue_items.id"), primary_key=True,
        ),
        sa.Column("telegram_group_id", sa.String(64), nullable=True),
        sa.Column("telegram_chat_id", sa.String(64), nullable=True),
        sa.Column("telegram_channel", sa.String(128), nullable=True),
        sa.Column("telegram_username", sa.String(64), nullable=True),
        sa.Column("telegram_id", sa.String(64), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("telegram_data")
