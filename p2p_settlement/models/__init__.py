"""SQLAlchemy ORM models for the P2P settlement queue."""

from p2p_settlement.models.queue_item import QueueItem, QueueItemStatus, QueueSide
from p2p_settlement.models.match import QueueMatch, MatchStatus
from p2p_settlement.models.telegram_data import TelegramData
from p2p_settlement.models.ledger import (
    CustomerAccount,
    LedgerTransaction,
    LedgerTransactionType,
)

__all__ = [
    "QueueItem", "QueueItemStatus", "QueueSide",
    "QueueMatch", "MatchStatus",
    "TelegramData",
    "CustomerAccount", "LedgerTransaction", "LedgerTransactionType",
]
