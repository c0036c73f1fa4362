"""
Queue match model — a withdrawal paired with a deposit awaiting approval.

Created by the matcher in ``pending``; an administrator approves or rejects
it, and approval hands it to the settlement executor.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from p2p_settlement.database import Base
from p2p_settlement.queue_engine.exceptions import InvalidTransition


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


MATCH_TRANSITIONS: dict[MatchStatus, set[MatchStatus]] = {
    MatchStatus.PENDING: {MatchStatus.PROCESSING, MatchStatus.FAILED},
    MatchStatus.PROCESSING: {MatchStatus.COMPLETED, MatchStatus.FAILED},
    MatchStatus.COMPLETED: set(),
    MatchStatus.FAILED: set(),
}

MATCH_TERMINAL_STATUSES = frozenset({MatchStatus.COMPLETED, MatchStatus.FAILED})


class QueueMatch(Base):
    __tablename__ = "queue_matches"
    __table_args__ = (
        UniqueConstraint(
            "withdrawal_item_id", "deposit_item_id",
            name="uq_queue_matches_pair",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    withdrawal_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("queue_items.id"), index=True, nullable=False,
    )
    deposit_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("queue_items.id"), index=True, nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), nullable=False,
    )
    # Computed once at creation for audit/ranking; never recomputed
    score: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[MatchStatus] = mapped_column(
        SAEnum(
            MatchStatus,
            name="queuematchstatus",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=MatchStatus.PENDING,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @staticmethod
    def is_valid_transition(from_status: MatchStatus, to_status: MatchStatus) -> bool:
        return to_status in MATCH_TRANSITIONS.get(from_status, set())

    @property
    def is_terminal(self) -> bool:
        return self.status in MATCH_TERMINAL_STATUSES

    @property
    def item_ids(self) -> tuple[str, str]:
        return self.withdrawal_item_id, self.deposit_item_id

    def transition_values(
        self,
        new_status: MatchStatus,
        now: datetime | None = None,
    ) -> dict:
        """Column values for a move to *new_status*; raises InvalidTransition."""
        if not self.is_valid_transition(self.status, new_status):
            raise InvalidTransition(
                f"Invalid match transition: {self.status.value} -> {new_status.value}",
                match_id=self.id,
            )
        values: dict = {"status": new_status}
        if new_status in MATCH_TERMINAL_STATUSES:
            values["completed_at"] = now or datetime.now(timezone.utc)
        return values

    def __repr__(self) -> str:
        return (
            f"<QueueMatch {self.id} "
            f"w={self.withdrawal_item_id} d={self.deposit_item_id} "
            f"{self.amount} score={self.score} "
            f"({self.status.value if self.status else 'N/A'})>"
        )


@event.listens_for(QueueMatch, "init")
def _set_match_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = str(uuid.uuid4())
    if "status" not in kwargs:
        target.status = MatchStatus.PENDING
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
