"""
Telegram routing metadata for queue items.

Owned by the notification service: the queue core never reads these
fields, it only supplies the queue item id the row is keyed on.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from p2p_settlement.database import Base

ROUTING_FIELDS = (
    "telegram_group_id",
    "telegram_chat_id",
    "telegram_channel",
    "telegram_username",
    "telegram_id",
)


class TelegramData(Base):
    __tablename__ = "telegram_data"

    queue_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("queue_items.id"), primary_key=True,
    )
    telegram_group_id: Mapped[str | None] = mapped_column(String(64))
    telegram_chat_id: Mapped[str | None] = mapped_column(String(64))
    telegram_channel: Mapped[str | None] = mapped_column(String(128))
    telegram_username: Mapped[str | None] = mapped_column(String(64))
    telegram_id: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def chat_target(self) -> str | None:
        """Where item-level messages go: group first, then direct chat."""
        return self.telegram_group_id or self.telegram_chat_id

    def __repr__(self) -> str:
        return f"<TelegramData item={self.queue_item_id} chat={self.chat_target}>"
