"""
Pydantic schemas for the P2P queue and match endpoints.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from p2p_settlement.models.match import MatchStatus
from p2p_settlement.models.queue_item import QueueItemStatus, QueueSide


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TelegramRouting(BaseModel):
    """Where notifications about the item should go."""
    telegram_group_id: str | None = None
    telegram_chat_id: str | None = None
    telegram_channel: str | None = None
    telegram_username: str | None = None
    telegram_id: str | None = None


class EnqueueRequest(BaseModel):
    """Schema for queueing a withdrawal or a deposit."""
    customer_id: str = Field(..., min_length=1, max_length=64, examples=["CUST-1042"])
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2, examples=["500.00"])
    payment_method: str = Field(..., min_length=1, max_length=50, examples=["bank_transfer"])
    payment_details: str = Field("", examples=['{"bank": "Example Bank"}'])
    priority: int = Field(1, examples=[1])
    notes: str | None = None
    telegram: TelegramRouting | None = None


class ItemUpdateRequest(BaseModel):
    """Only notes and priority can change after an item is queued."""
    model_config = ConfigDict(extra="forbid")

    notes: str | None = None
    priority: int | None = None


class ReasonRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    side: QueueSide
    customer_id: str
    amount: Decimal
    payment_method: str
    payment_details: str
    priority: int
    status: QueueItemStatus
    matched_with: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class QueueMatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    withdrawal_item_id: str
    deposit_item_id: str
    amount: Decimal
    score: int
    status: MatchStatus
    notes: str | None
    created_at: datetime
    completed_at: datetime | None


class EnqueueResponse(BaseModel):
    item: QueueItemResponse
    match: QueueMatchResponse | None = None


class QueueItemListResponse(BaseModel):
    items: list[QueueItemResponse]
    total: int


class QueueMatchListResponse(BaseModel):
    matches: list[QueueMatchResponse]
    total: int


class QueueStatsResponse(BaseModel):
    total_items: int
    by_side: dict[str, dict[str, int]]
    pending_withdrawals: int
    pending_deposits: int
    active_matches: int
    pending_matches: int
    average_wait_seconds: float
    success_rate: float
    completed_volume: Decimal
    window_hours: float
    last_updated: datetime
