"""Tests for the QueueItem model — defaults and the item state machine."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from p2p_settlement.models.queue_item import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    QueueItem,
    QueueItemStatus,
    QueueSide,
)
from p2p_settlement.queue_engine.exceptions import InvalidTransition


def _move(obj, status, now=None):
    """Apply a validated transition in place, as the store does after a commit."""
    for key, value in obj.transition_values(status, now).items():
        setattr(obj, key, value)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def item():
    """Create a minimal pending withdrawal."""
    return QueueItem(
        side=QueueSide.WITHDRAWAL,
        customer_id="CUST-1",
        amount=Decimal("500.00"),
        payment_method="bank_transfer",
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestQueueItemCreation:
    def test_create_with_defaults(self, item):
        assert uuid.UUID(item.id)
        assert item.status == QueueItemStatus.PENDING
        assert item.priority == 1
        assert item.payment_details == ""
        assert item.matched_with is None
        assert item.notes is None
        assert item.created_at.tzinfo is not None
        assert item.updated_at == item.created_at

    def test_ids_are_unique(self):
        ids = {
            QueueItem(side=QueueSide.DEPOSIT, customer_id="c", amount=Decimal("1"), payment_method="m").id
            for _ in range(100)
        }
        assert len(ids) == 100

    def test_side_opposite(self):
        assert QueueSide.WITHDRAWAL.opposite is QueueSide.DEPOSIT
        assert QueueSide.DEPOSIT.opposite is QueueSide.WITHDRAWAL

    def test_wait_seconds_never_negative(self, item):
        assert item.wait_seconds(item.created_at + timedelta(minutes=3)) == 180
        assert item.wait_seconds(item.created_at - timedelta(minutes=3)) == 0

    def test_repr_contains_side_and_amount(self, item):
        r = repr(item)
        assert "withdrawal" in r
        assert "500.00" in r


# ---------------------------------------------------------------------------
# Status Transitions
# ---------------------------------------------------------------------------


class TestStatusTransitions:
    def test_pending_to_matched(self, item):
        _move(item, QueueItemStatus.MATCHED)
        assert item.status == QueueItemStatus.MATCHED

    def test_matched_to_processing_to_completed(self, item):
        for status in (
            QueueItemStatus.MATCHED,
            QueueItemStatus.PROCESSING,
            QueueItemStatus.COMPLETED,
        ):
            _move(item, status)
        assert item.status == QueueItemStatus.COMPLETED
        assert item.is_terminal

    def test_processing_to_failed(self, item):
        _move(item, QueueItemStatus.MATCHED)
        _move(item, QueueItemStatus.PROCESSING)
        _move(item, QueueItemStatus.FAILED)
        assert item.status == QueueItemStatus.FAILED

    def test_back_to_pending_clears_matched_with(self, item):
        _move(item, QueueItemStatus.MATCHED)
        item.matched_with = "other-item"
        _move(item, QueueItemStatus.PENDING)
        assert item.status == QueueItemStatus.PENDING
        assert item.matched_with is None

    @pytest.mark.parametrize("start", [QueueItemStatus.PENDING, QueueItemStatus.MATCHED])
    def test_cancellable_states(self, item, start):
        item.status = start
        _move(item, QueueItemStatus.CANCELLED)
        assert item.status == QueueItemStatus.CANCELLED

    def test_processing_cannot_be_cancelled(self, item):
        item.status = QueueItemStatus.PROCESSING
        with pytest.raises(InvalidTransition):
            _move(item, QueueItemStatus.CANCELLED)

    def test_pending_cannot_skip_to_processing(self, item):
        with pytest.raises(InvalidTransition):
            _move(item, QueueItemStatus.PROCESSING)
        assert item.status == QueueItemStatus.PENDING

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, item, terminal):
        item.status = terminal
        for target in QueueItemStatus:
            assert not QueueItem.is_valid_transition(terminal, target)

    def test_terminal_set(self):
        assert TERMINAL_STATUSES == {
            QueueItemStatus.COMPLETED,
            QueueItemStatus.FAILED,
            QueueItemStatus.CANCELLED,
        }

    def test_every_status_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(QueueItemStatus)

    def test_transition_values_do_not_touch_instance(self, item):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        values = item.transition_values(QueueItemStatus.MATCHED, now)
        assert values == {"status": QueueItemStatus.MATCHED, "updated_at": now}
        assert item.status == QueueItemStatus.PENDING
