"""
Settlement executor — applies the money movement of an approved match.

One settlement is one database transaction:

    withdrawal customer   debit record   -amount   (withdrawal_matched)
    deposit customer      balance credit +amount
    deposit customer      credit record  +amount   (deposit_matched)
    both items            processing -> completed
    match                 processing -> completed, completed_at = now

If anything in that transaction fails it is rolled back and the match and
both items are forced to ``failed`` instead.  Failed settlements are never
retried automatically: without an idempotency key a retry could pay twice,
so they are logged at CRITICAL for manual reconciliation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from p2p_settlement.models.ledger import LedgerTransactionType
from p2p_settlement.models.match import MatchStatus, QueueMatch
from p2p_settlement.models.queue_item import QueueItem, QueueItemStatus
from p2p_settlement.queue_engine.config import SETTLEMENT_FAILURE_NOTE_PREFIX
from p2p_settlement.queue_engine.exceptions import InvalidTransition, SettlementError

logger = logging.getLogger(__name__)


class SettlementExecutor:
    """Exactly-once financial side effects for a ``processing`` match."""

    def __init__(self, store, ledger=None):
        """
        Args:
            store: The QueueStore owning the match and its items.
            ledger: Ledger collaborator (defaults to the module-level
                    ``ledger_service``).
        """
        self.store = store
        self._ledger = ledger

    @property
    def ledger(self):
        if self._ledger is not None:
            return self._ledger
        from p2p_settlement.services.ledger_service import ledger_service
        return ledger_service

    async def settle(self, match_id: str, now: datetime | None = None) -> QueueMatch:
        """
        Settle a match that an administrator has approved.

        The ``processing`` precondition is the idempotency check: a match
        that is already ``completed`` (or ``failed``) is rejected with
        InvalidTransition and nothing is applied a second time.
        """
        match = self.store.get_match(match_id)
        if match.status != MatchStatus.PROCESSING:
            raise InvalidTransition(
                f"Match {match.id} is {match.status.value}; only processing matches can be settled",
                match_id=match.id,
            )
        withdrawal = self.store.get(match.withdrawal_item_id)
        deposit = self.store.get(match.deposit_item_id)
        now = now or datetime.now(timezone.utc)

        changes = [
            (withdrawal, withdrawal.transition_values(QueueItemStatus.COMPLETED, now)),
            (deposit, deposit.transition_values(QueueItemStatus.COMPLETED, now)),
            (match, match.transition_values(MatchStatus.COMPLETED, now)),
        ]

        async def _ledger_effects(session) -> None:
            await self.ledger.record_transaction(
                session,
                withdrawal.customer_id,
                -match.amount,
                LedgerTransactionType.WITHDRAWAL_MATCHED,
                withdrawal.id,
                notes=f"P2P matched withdrawal (match {match.id})",
            )
            await self.ledger.credit(session, deposit.customer_id, match.amount)
            await self.ledger.record_transaction(
                session,
                deposit.customer_id,
                match.amount,
                LedgerTransactionType.DEPOSIT_MATCHED,
                deposit.id,
                notes=f"P2P matched deposit (match {match.id})",
            )

        try:
            await self.store.apply(changes, before_commit=_ledger_effects)
        except Exception as exc:
            await self._force_failed(match, withdrawal, deposit, str(exc), now)
            raise SettlementError(
                f"Settlement of match {match.id} failed: {exc}",
                match_id=match.id,
            ) from exc

        logger.info(
            "Settled match %s: %s from deposit %s to withdrawal %s",
            match.id, match.amount, deposit.id, withdrawal.id,
        )
        return match

    async def _force_failed(
        self,
        match: QueueMatch,
        withdrawal: QueueItem,
        deposit: QueueItem,
        reason: str,
        now: datetime,
    ) -> None:
        """Move the match and both items to ``failed`` after a rolled-back settlement."""
        logger.critical(
            "Settlement of match %s (%s, withdrawal %s, deposit %s) failed: %s. "
            "Manual reconciliation required.",
            match.id, match.amount, withdrawal.id, deposit.id, reason,
        )
        match_values = match.transition_values(MatchStatus.FAILED, now)
        match_values["notes"] = f"{SETTLEMENT_FAILURE_NOTE_PREFIX}: {reason}"
        changes = [(match, match_values)]
        for item in (withdrawal, deposit):
            if item.status == QueueItemStatus.PROCESSING:
                changes.append((item, item.transition_values(QueueItemStatus.FAILED, now)))
        try:
            await self.store.apply(changes)
        except Exception:
            logger.critical(
                "Could not record failure of match %s; it is still marked processing",
                match.id,
                exc_info=True,
            )
