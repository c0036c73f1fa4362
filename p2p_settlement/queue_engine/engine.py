"""
Queue engine orchestrator.

Single-writer funnel in front of the store: every mutating operation runs
under one ``asyncio.Lock``, so "pick a candidate, create the match, flip
both items" can never interleave with another writer in this process.
The store's database transaction makes the same unit atomic on disk.

Notifications are dispatched only after the state change has committed,
fire-and-forget; a failed dispatch is logged and never undoes a transition.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from p2p_settlement.models.match import QueueMatch
from p2p_settlement.models.queue_item import QueueItem, QueueItemStatus, QueueSide
from p2p_settlement.queue_engine.config import (
    CANCELLATION_DEFAULT_REASON,
    CLEANUP_MAX_AGE,
    DEFAULT_PRIORITY,
    REJECTION_DEFAULT_REASON,
    STATS_WINDOW,
)
from p2p_settlement.queue_engine.exceptions import (
    PersistenceError,
    SettlementError,
    ValidationError,
)
from p2p_settlement.queue_engine.lifecycle import MatchLifecycleController
from p2p_settlement.queue_engine.matcher import (
    calculate_match_score,
    match_amount,
    select_best_candidate,
    split_pair,
)
from p2p_settlement.queue_engine.reporter import build_queue_stats
from p2p_settlement.queue_engine.settlement import SettlementExecutor
from p2p_settlement.queue_engine.store import QueueStore

logger = logging.getLogger(__name__)

Notifier = Callable[[str, dict], None]
BalanceValidator = Callable[[str, Decimal], Awaitable[bool]]


class QueueEngine:
    """Owns the queue store and serialises every write that goes through it."""

    def __init__(
        self,
        store: QueueStore | None = None,
        session_factory=None,
        notifier: Notifier | None = None,
        lock=None,
        ledger=None,
        balance_validator: BalanceValidator | None = None,
    ):
        """
        Args:
            store: QueueStore instance (a new one over *session_factory*
                   when omitted).
            session_factory: Async session factory for DB access
                             (defaults to ``p2p_settlement.database.async_session``).
            notifier: ``notifier(event, payload)`` called after each commit
                      (defaults to the Celery dispatcher).
            lock: MaintenanceLock guarding ``run_maintenance`` across processes.
            ledger: Ledger collaborator handed to the settlement executor.
            balance_validator: Optional ``await validator(customer_id, amount)``
                               consulted for withdrawals before they are queued.
        """
        self._session_factory = session_factory
        self.store = store if store is not None else QueueStore(session_factory=session_factory)
        self._notifier = notifier
        self._lock = lock
        self.balance_validator = balance_validator
        self.settlement = SettlementExecutor(self.store, ledger=ledger)
        self.lifecycle = MatchLifecycleController(self.store, self.settlement)
        self._write_lock = asyncio.Lock()

    @property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from p2p_settlement.database import async_session
        return async_session

    @property
    def notifier(self) -> Notifier:
        if self._notifier is not None:
            return self._notifier
        from p2p_settlement.tasks.notification_tasks import dispatch_queue_notification
        return dispatch_queue_notification

    @property
    def maintenance_lock(self):
        if self._lock is not None:
            return self._lock
        from p2p_settlement.queue_engine.locks import MaintenanceLock
        self._lock = MaintenanceLock()
        return self._lock

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Hydrate the working set, then pair anything left unmatched."""
        await self.store.load()
        created = await self.rescan()
        logger.info("Queue engine started (%d matches created on start-up)", len(created))

    def close(self) -> None:
        self.store.close()

    # ── Enqueue + matching ───────────────────────────────────────────────

    async def enqueue(
        self,
        side: QueueSide | str,
        customer_id: str,
        amount: Decimal | str | int,
        payment_method: str,
        payment_details: str = "",
        priority: int = DEFAULT_PRIORITY,
        notes: str | None = None,
        routing: dict | None = None,
    ) -> tuple[QueueItem, QueueMatch | None]:
        """
        Queue a new item and try to match it straight away.

        Returns ``(item, match)``; ``match`` is None when no compatible
        counter-item was pending.  *routing* carries optional Telegram
        routing fields for the item's notifications.
        """
        item = self.store.build_item(
            side, customer_id, amount, payment_method, payment_details, priority, notes,
        )
        if item.side == QueueSide.WITHDRAWAL and self.balance_validator is not None:
            await self._check_balance(item)

        async with self._write_lock:
            await self.store.insert(item)
            match = await self._match_or_defer(item)

        if routing:
            await self._save_routing(item.id, routing)

        self._notify("item_queued", self._item_payload(item))
        if match is not None:
            self._notify("match_found", self._match_payload(match))
        return item, match

    async def enqueue_withdrawal(self, customer_id, amount, payment_method, **kwargs):
        return await self.enqueue(QueueSide.WITHDRAWAL, customer_id, amount, payment_method, **kwargs)

    async def enqueue_deposit(self, customer_id, amount, payment_method, **kwargs):
        return await self.enqueue(QueueSide.DEPOSIT, customer_id, amount, payment_method, **kwargs)

    async def attempt_match(self, item_id: str) -> QueueMatch | None:
        """Try to pair one pending item; a no-op for anything not pending."""
        async with self._write_lock:
            match = await self._attempt_match_locked(self.store.get(item_id))
        if match is not None:
            self._notify("match_found", self._match_payload(match))
        return match

    async def rescan(self) -> list[QueueMatch]:
        """
        Re-attempt matching for every pending item, oldest first.

        Picks up items that stayed unmatched because of a persistence
        failure or because their counter-item arrived while they were
        paired with someone else.
        """
        created: list[QueueMatch] = []
        async with self._write_lock:
            for item in list(self.store.list_items(status=QueueItemStatus.PENDING)):
                match = await self._match_or_defer(item)
                if match is not None:
                    created.append(match)

        for match in created:
            self._notify("match_found", self._match_payload(match))
        if created:
            logger.info("Re-scan created %d matches", len(created))
        return created

    async def _match_or_defer(self, item: QueueItem) -> QueueMatch | None:
        """Match *item*; a persistence failure leaves it pending for the next re-scan."""
        try:
            return await self._attempt_match_locked(item)
        except PersistenceError as exc:
            logger.warning("Matching of %s deferred to next re-scan: %s", item.id, exc)
            return None

    async def _attempt_match_locked(
        self,
        item: QueueItem,
        now: datetime | None = None,
    ) -> QueueMatch | None:
        # Caller holds self._write_lock
        if item.status != QueueItemStatus.PENDING:
            return None

        pool = self.store.list_items(
            side=item.side.opposite,
            status=QueueItemStatus.PENDING,
            payment_method=item.payment_method,
        )
        candidate = select_best_candidate(item, pool, self.store.partners_of(item.id))
        if candidate is None:
            return None

        now = now or datetime.now(timezone.utc)
        withdrawal, deposit = split_pair(item, candidate)
        match = QueueMatch(
            withdrawal_item_id=withdrawal.id,
            deposit_item_id=deposit.id,
            amount=match_amount(withdrawal, deposit),
            score=calculate_match_score(item, candidate, now),
            created_at=now,
        )
        await self.store.record_match(match, withdrawal, deposit, now)
        logger.info(
            "Matched withdrawal %s with deposit %s: %s (score %d, match %s)",
            withdrawal.id, deposit.id, match.amount, match.score, match.id,
        )
        return match

    # ── Administrator operations ─────────────────────────────────────────

    async def approve(self, match_id: str) -> QueueMatch:
        """Approve a pending match and settle it (raises SettlementError on failure)."""
        async with self._write_lock:
            try:
                match = await self.lifecycle.approve(match_id)
            except SettlementError as exc:
                failed = self.store.get_match(match_id)
                self._notify("match_approved", self._match_payload(failed))
                self._notify(
                    "settlement_failed",
                    self._match_payload(failed, reason=str(exc)),
                )
                raise

        payload = self._match_payload(match)
        self._notify("match_approved", payload)
        self._notify("settlement_completed", payload)
        return match

    async def reject(self, match_id: str, reason: str | None = None) -> QueueMatch:
        async with self._write_lock:
            match = await self.lifecycle.reject(match_id, reason or REJECTION_DEFAULT_REASON)
        self._notify("match_rejected", self._match_payload(match, reason=match.notes))
        return match

    async def cancel_item(self, item_id: str, reason: str | None = None) -> QueueItem:
        """Cancel an item; a pending match it was in is failed and its partner re-queued."""
        async with self._write_lock:
            item, match = await self.lifecycle.cancel_item(
                item_id, reason or CANCELLATION_DEFAULT_REASON,
            )

        payload = self._item_payload(item, reason=item.notes)
        if match is not None:
            payload["match_id"] = match.id
            payload["item_ids"] = list(match.item_ids)
        self._notify("item_cancelled", payload)
        return item

    async def update_item(self, item_id: str, **fields) -> QueueItem:
        """Edit ``notes`` and/or ``priority``; every other field is immutable."""
        illegal = set(fields) - {"notes", "priority"}
        if illegal:
            raise ValidationError(
                f"Immutable fields cannot be changed: {', '.join(sorted(illegal))}",
            )
        async with self._write_lock:
            return await self.store.update_metadata(item_id, **fields)

    # ── Read side ────────────────────────────────────────────────────────

    def stats(self, now: datetime | None = None, window: timedelta = STATS_WINDOW) -> dict:
        return build_queue_stats(self.store, now, window)

    # ── Maintenance ──────────────────────────────────────────────────────

    async def run_maintenance(self, max_age: timedelta = CLEANUP_MAX_AGE) -> dict:
        """
        Run one re-scan + cleanup cycle.

        Acquires a distributed lock so an overlapping process (during a
        restart) never runs a cycle at the same time.  Returns ``{"skipped": True}`` if the lock is
        already held.
        """
        lock = await self.maintenance_lock.acquire()
        if lock is None:
            logger.warning("Maintenance cycle skipped — lock held by another process")
            return {"skipped": True}

        try:
            started_at = datetime.now(timezone.utc)
            created = await self.rescan()
            async with self._write_lock:
                removed = self.store.cleanup(max_age)
            return {
                "skipped": False,
                "started_at": started_at.isoformat(),
                "matches_created": len(created),
                **removed,
            }
        finally:
            await self.maintenance_lock.release(lock)

    async def maintenance_loop(self, interval: float) -> None:
        """Run ``run_maintenance`` every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                report = await self.run_maintenance()
                logger.info("Maintenance cycle: %s", report)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Maintenance cycle failed")

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _check_balance(self, item: QueueItem) -> None:
        try:
            sufficient = await self.balance_validator(item.customer_id, item.amount)
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Balance check failed: {exc}") from exc
        if not sufficient:
            raise ValidationError(
                f"Insufficient balance for withdrawal of {item.amount}",
                field="amount",
            )

    async def _save_routing(self, item_id: str, routing: dict) -> None:
        """Store Telegram routing; losing it only costs the customer's chat message."""
        from p2p_settlement.services.notification_service import notification_service

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await notification_service.save_routing(session, item_id, routing)
        except (SQLAlchemyError, OSError):
            logger.exception("Could not store Telegram routing for %s", item_id)

    def _notify(self, event: str, payload: dict) -> None:
        try:
            self.notifier(event, payload)
        except Exception:
            logger.exception("Notification %s could not be dispatched", event)

    @staticmethod
    def _item_payload(item: QueueItem, **extra) -> dict:
        return {
            "item_id": item.id,
            "item_ids": [item.id],
            "side": item.side.value,
            "customer_id": item.customer_id,
            "amount": str(item.amount),
            "payment_method": item.payment_method,
            "status": item.status.value,
            **extra,
        }

    def _match_payload(self, match: QueueMatch, **extra) -> dict:
        withdrawal = self.store.get(match.withdrawal_item_id)
        return {
            "match_id": match.id,
            "item_ids": list(match.item_ids),
            "withdrawal_item_id": match.withdrawal_item_id,
            "deposit_item_id": match.deposit_item_id,
            "amount": str(match.amount),
            "score": match.score,
            "payment_method": withdrawal.payment_method,
            "status": match.status.value,
            **extra,
        }
