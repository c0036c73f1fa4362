"""
Integration tests for the queue engine — real PostgreSQL and Redis.

Tests: enqueue + match persisted, reload from the durable store,
       guarded updates against a concurrent writer, settlement ledger
       rows, pair uniqueness constraint, maintenance lock exclusion.

Prerequisites:
  docker compose -f docker-compose.test.yml up -d
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from p2p_settlement.models.ledger import CustomerAccount, LedgerTransaction
from p2p_settlement.models.match import MatchStatus, QueueMatch
from p2p_settlement.models.queue_item import QueueItem, QueueItemStatus
from p2p_settlement.queue_engine.engine import QueueEngine
from p2p_settlement.queue_engine.exceptions import PersistenceError
from p2p_settlement.queue_engine.locks import MaintenanceLock
from p2p_settlement.queue_engine.store import QueueStore


def _engine(session_factory, redis_client=None) -> QueueEngine:
    return QueueEngine(
        session_factory=session_factory,
        notifier=MagicMock(),
        lock=MaintenanceLock(redis_client=redis_client, key="test:queue:maintenance:lock"),
    )


class TestPersistence:
    @pytest.mark.asyncio
    async def test_match_is_durable_and_reloadable(self, session_factory):
        engine = _engine(session_factory)
        deposit, _ = await engine.enqueue_deposit("CUST-D", "520.00", "bank_transfer")
        withdrawal, match = await engine.enqueue_withdrawal("CUST-W", "500.00", "bank_transfer")
        assert match is not None

        async with session_factory() as session:
            row = await session.get(QueueItem, withdrawal.id)
            assert row.status == QueueItemStatus.MATCHED
            assert row.matched_with == deposit.id

        fresh = QueueStore(session_factory=session_factory)
        await fresh.load()
        assert fresh.get(deposit.id).matched_with == withdrawal.id
        assert fresh.get_match(match.id).status == MatchStatus.PENDING
        assert fresh.partners_of(withdrawal.id) == {deposit.id}

    @pytest.mark.asyncio
    async def test_stale_status_is_rejected(self, session_factory):
        engine = _engine(session_factory)
        item, _ = await engine.enqueue_deposit("CUST-D", "100.00", "card")

        # Another process cancels the row behind this store's back
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(QueueItem)
                    .where(QueueItem.id == item.id)
                    .values(status=QueueItemStatus.CANCELLED)
                )

        with pytest.raises(PersistenceError):
            await engine.cancel_item(item.id)
        assert engine.store.get(item.id).status == QueueItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_pair_uniqueness_enforced_by_database(self, session_factory):
        engine = _engine(session_factory)
        d, _ = await engine.enqueue_deposit("CUST-D", "100.00", "card")
        w, _ = await engine.enqueue_withdrawal("CUST-W", "100.00", "card")

        async with session_factory() as session:
            session.add(QueueMatch(
                withdrawal_item_id=w.id, deposit_item_id=d.id,
                amount=Decimal("100.00"), score=100,
            ))
            with pytest.raises(IntegrityError):
                await session.commit()


class TestSettlement:
    @pytest.mark.asyncio
    async def test_approve_writes_ledger_once(self, session_factory):
        engine = _engine(session_factory)
        await engine.enqueue_deposit("CUST-D", "520.00", "bank_transfer")
        _, match = await engine.enqueue_withdrawal("CUST-W", "500.00", "bank_transfer")

        await engine.approve(match.id)

        async with session_factory() as session:
            account = await session.get(CustomerAccount, "CUST-D")
            assert account.balance == Decimal("500.00")
            records = (await session.execute(
                select(LedgerTransaction).order_by(LedgerTransaction.id)
            )).scalars().all()
            assert [(r.customer_id, r.amount) for r in records] == [
                ("CUST-W", Decimal("-500.00")),
                ("CUST-D", Decimal("500.00")),
            ]
            stored = await session.get(QueueMatch, match.id)
            assert stored.status == MatchStatus.COMPLETED
            assert stored.completed_at is not None


class TestMaintenanceLock:
    @pytest.mark.asyncio
    async def test_second_replica_is_skipped(self, session_factory, real_redis):
        first = _engine(session_factory, real_redis)
        second = _engine(session_factory, real_redis)

        held = await first.maintenance_lock.acquire()
        try:
            assert await second.run_maintenance() == {"skipped": True}
        finally:
            await first.maintenance_lock.release(held)

        report = await second.run_maintenance()
        assert report["skipped"] is False
