"""
Match lifecycle — administrator approval, rejection and item cancellation.

Approval is a human-in-the-loop gate: nothing here runs automatically.
Each operation validates its precondition, then writes every affected row
in one store transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from p2p_settlement.models.match import MatchStatus, QueueMatch
from p2p_settlement.models.queue_item import QueueItem, QueueItemStatus
from p2p_settlement.queue_engine.config import (
    CANCELLATION_DEFAULT_REASON,
    CANCELLATION_MATCH_NOTE,
    REJECTION_DEFAULT_REASON,
)
from p2p_settlement.queue_engine.exceptions import InvalidState

logger = logging.getLogger(__name__)


class MatchLifecycleController:
    """Drives a match from ``pending`` to approval (and settlement) or rejection."""

    def __init__(self, store, settlement):
        self.store = store
        self.settlement = settlement

    def _pending_match(self, match_id: str) -> QueueMatch:
        match = self.store.get_match(match_id)
        if match.status != MatchStatus.PENDING:
            raise InvalidState(
                f"Match {match.id} is {match.status.value}, expected pending",
                match_id=match.id,
            )
        return match

    async def approve(self, match_id: str, now: datetime | None = None) -> QueueMatch:
        """
        Approve a pending match and settle it.

        The match and both items move to ``processing`` together, then the
        settlement executor runs.  A settlement failure surfaces as
        SettlementError after the pair has been forced to ``failed``.
        """
        match = self._pending_match(match_id)
        withdrawal = self.store.get(match.withdrawal_item_id)
        deposit = self.store.get(match.deposit_item_id)
        now = now or datetime.now(timezone.utc)

        await self.store.apply([
            (match, match.transition_values(MatchStatus.PROCESSING, now)),
            (withdrawal, withdrawal.transition_values(QueueItemStatus.PROCESSING, now)),
            (deposit, deposit.transition_values(QueueItemStatus.PROCESSING, now)),
        ])
        logger.info("Match %s approved; settling %s", match.id, match.amount)

        return await self.settlement.settle(match.id, now)

    async def reject(
        self,
        match_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> QueueMatch:
        """Fail a pending match and return both items to the matching pool."""
        match = self._pending_match(match_id)
        withdrawal = self.store.get(match.withdrawal_item_id)
        deposit = self.store.get(match.deposit_item_id)
        now = now or datetime.now(timezone.utc)

        match_values = match.transition_values(MatchStatus.FAILED, now)
        match_values["notes"] = reason or REJECTION_DEFAULT_REASON

        await self.store.apply([
            (match, match_values),
            (withdrawal, withdrawal.transition_values(QueueItemStatus.PENDING, now)),
            (deposit, deposit.transition_values(QueueItemStatus.PENDING, now)),
        ])
        logger.info("Match %s rejected: %s", match.id, match.notes)
        return match

    async def cancel_item(
        self,
        item_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> tuple[QueueItem, QueueMatch | None]:
        """
        Cancel a ``pending`` or ``matched`` item.

        Cancelling a matched item also fails its pending match and puts the
        counter-item back in the pool.  Returns the item and that match.
        """
        item = self.store.get(item_id)
        now = now or datetime.now(timezone.utc)

        values = item.transition_values(QueueItemStatus.CANCELLED, now)
        values["matched_with"] = None
        values["notes"] = reason or CANCELLATION_DEFAULT_REASON
        changes = [(item, values)]

        match = None
        if item.status == QueueItemStatus.MATCHED:
            match = self.store.active_match_for(item.id)
        if match is not None:
            match_values = match.transition_values(MatchStatus.FAILED, now)
            match_values["notes"] = CANCELLATION_MATCH_NOTE
            changes.append((match, match_values))
            partner_id = (
                match.deposit_item_id if match.withdrawal_item_id == item.id
                else match.withdrawal_item_id
            )
            partner = self.store.get(partner_id)
            changes.append((partner, partner.transition_values(QueueItemStatus.PENDING, now)))

        await self.store.apply(changes)
        logger.info("Queue item %s cancelled: %s", item.id, item.notes)
        return item, match
