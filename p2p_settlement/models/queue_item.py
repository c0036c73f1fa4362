"""
Queue item model — one customer withdrawal or deposit waiting in the P2P queue.

A withdrawal is an amount to be paid out to its customer; a deposit is an
amount available to absorb withdrawals.  Items of opposite sides with the
same payment method are paired by the matcher and settled against each other.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SAEnum,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from p2p_settlement.database import Base
from p2p_settlement.queue_engine.exceptions import InvalidTransition

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class QueueSide(str, enum.Enum):
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"

    @property
    def opposite(self) -> "QueueSide":
        if self is QueueSide.WITHDRAWAL:
            return QueueSide.DEPOSIT
        return QueueSide.WITHDRAWAL


class QueueItemStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Status transition map
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[QueueItemStatus, set[QueueItemStatus]] = {
    QueueItemStatus.PENDING: {
        QueueItemStatus.MATCHED,
        QueueItemStatus.CANCELLED,
    },
    QueueItemStatus.MATCHED: {
        QueueItemStatus.PROCESSING,
        QueueItemStatus.PENDING,
        QueueItemStatus.CANCELLED,
    },
    QueueItemStatus.PROCESSING: {
        QueueItemStatus.COMPLETED,
        QueueItemStatus.FAILED,
    },
    QueueItemStatus.COMPLETED: set(),
    QueueItemStatus.FAILED: set(),
    QueueItemStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Statuses in which ``matched_with`` must point at a live counter-item
PAIRED_STATUSES = frozenset({QueueItemStatus.MATCHED, QueueItemStatus.PROCESSING})


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_queue_items_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    side: Mapped[QueueSide] = mapped_column(
        SAEnum(QueueSide, name="queueside", values_callable=_enum_values),
        nullable=False,
    )
    customer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), nullable=False,
    )
    payment_method: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    # Opaque payment instruction blob; never interpreted by the matcher
    payment_details: Mapped[str] = mapped_column(Text, default="")

    # Stored and editable, but not part of the match score
    priority: Mapped[int] = mapped_column(Integer, default=1)

    status: Mapped[QueueItemStatus] = mapped_column(
        SAEnum(QueueItemStatus, name="queueitemstatus", values_callable=_enum_values),
        default=QueueItemStatus.PENDING,
        index=True,
    )
    matched_with: Mapped[str | None] = mapped_column(String(36), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    # ------------------------------------------------------------------
    # Status transition validation
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid_transition(from_status: QueueItemStatus, to_status: QueueItemStatus) -> bool:
        """Check whether a status transition is allowed."""
        allowed = VALID_TRANSITIONS.get(from_status, set())
        return to_status in allowed

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_values(
        self,
        new_status: QueueItemStatus,
        now: datetime | None = None,
    ) -> dict:
        """
        Return the column values a move to *new_status* would write.

        Raises InvalidTransition if the move is not allowed.  Nothing on
        the instance is changed, so the caller can persist first and
        apply afterwards.
        """
        if not self.is_valid_transition(self.status, new_status):
            raise InvalidTransition(
                f"Invalid transition: {self.status.value} -> {new_status.value}",
                item_id=self.id,
            )
        values = {
            "status": new_status,
            "updated_at": now or datetime.now(timezone.utc),
        }
        if new_status == QueueItemStatus.PENDING:
            values["matched_with"] = None
        return values

    def wait_seconds(self, now: datetime) -> float:
        """Seconds this item has been queued as of *now*."""
        return max(0.0, (now - self.created_at).total_seconds())

    def __repr__(self) -> str:
        return (
            f"<QueueItem {self.id} "
            f"{self.side.value if self.side else 'N/A'} "
            f"{self.amount} {self.payment_method} "
            f"status={self.status.value if self.status else 'N/A'}>"
        )


# ---------------------------------------------------------------------------
# Auto-set Python-side defaults on construction
# ---------------------------------------------------------------------------


@event.listens_for(QueueItem, "init")
def _set_queue_item_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = str(uuid.uuid4())
    if "status" not in kwargs:
        target.status = QueueItemStatus.PENDING
    if "priority" not in kwargs:
        target.priority = 1
    if "payment_details" not in kwargs:
        target.payment_details = ""
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
    if "updated_at" not in kwargs:
        target.updated_at = target.created_at
