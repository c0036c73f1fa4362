"""
Queue statistics — read-only snapshot of the working set for dashboards.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from p2p_settlement.models.match import MatchStatus
from p2p_settlement.models.queue_item import QueueItemStatus, QueueSide
from p2p_settlement.queue_engine.config import STATS_WINDOW

_OUTCOME_STATUSES = (
    QueueItemStatus.COMPLETED,
    QueueItemStatus.FAILED,
    QueueItemStatus.CANCELLED,
)


def build_queue_stats(
    store,
    now: datetime | None = None,
    window: timedelta = STATS_WINDOW,
) -> dict:
    """
    Build the statistics report for the current queue state.

    Success rate is ``completed / (completed + failed + cancelled)`` over
    items that reached a terminal state within *window*; it is 0 when no
    item did.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - window
    items = store.all_items()
    matches = list(store.list_matches())

    by_side: dict[str, dict[str, int]] = {
        side.value: {status.value: 0 for status in QueueItemStatus}
        for side in QueueSide
    }
    for item in items:
        by_side[item.side.value][item.status.value] += 1

    pending = [item for item in items if item.status == QueueItemStatus.PENDING]
    if pending:
        average_wait = sum(item.wait_seconds(now) for item in pending) / len(pending)
    else:
        average_wait = 0.0

    outcomes = {status: 0 for status in _OUTCOME_STATUSES}
    for item in items:
        if item.status in outcomes and item.updated_at >= cutoff:
            outcomes[item.status] += 1

    # One settled match moves its amount once; items would count it twice
    completed_volume = sum(
        (m.amount for m in matches
         if m.status == MatchStatus.COMPLETED and m.completed_at and m.completed_at >= cutoff),
        Decimal("0"),
    )

    finished = sum(outcomes.values())
    if finished:
        success_rate = round(outcomes[QueueItemStatus.COMPLETED] / finished * 100, 2)
    else:
        success_rate = 0.0

    return {
        "total_items": len(items),
        "by_side": by_side,
        "pending_withdrawals": by_side[QueueSide.WITHDRAWAL.value][QueueItemStatus.PENDING.value],
        "pending_deposits": by_side[QueueSide.DEPOSIT.value][QueueItemStatus.PENDING.value],
        "active_matches": len([m for m in matches if not m.is_terminal]),
        "pending_matches": len([m for m in matches if m.status == MatchStatus.PENDING]),
        "average_wait_seconds": round(average_wait, 2),
        "success_rate": success_rate,
        "completed_volume": str(completed_volume),
        "window_hours": window.total_seconds() / 3600,
        "last_updated": now.isoformat(),
    }
