"""
Matching algorithm — pairs one newly queued item with its best counter-item.

Greedy, online, one-shot: the new item looks at the opposite-side pool once,
ranks the compatible candidates, and takes the first.  There is no
backtracking and no global optimisation.

Candidate filter (symmetric):
    * opposite side, status ``pending``, same payment method
    * a withdrawal needs a deposit at least as large;
      a deposit takes withdrawals no larger than itself

Ranking: ascending absolute amount difference, then oldest ``created_at``,
then item id so the order never depends on how the pool was iterated.

All amount arithmetic uses ``Decimal``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from p2p_settlement.models.queue_item import QueueItem, QueueItemStatus, QueueSide
from p2p_settlement.queue_engine.config import (
    SCORE_BASE,
    SCORE_PAYMENT_METHOD_BONUS,
    SCORE_WAIT_CAP,
    SCORE_WAIT_SECONDS_PER_POINT,
)


# ── Candidate filter ────────────────────────────────────────────────────


def is_candidate(item: QueueItem, other: QueueItem) -> bool:
    """Return True if *other* may be paired with the newly queued *item*."""
    if other.id == item.id or other.side == item.side:
        return False
    if other.status != QueueItemStatus.PENDING:
        return False
    if other.payment_method != item.payment_method:
        return False
    if item.side == QueueSide.WITHDRAWAL:
        # The deposit must cover the whole withdrawal
        return other.amount >= item.amount
    return other.amount <= item.amount


def find_candidates(
    item: QueueItem,
    pool: Iterable[QueueItem],
    excluded_ids: frozenset[str] | set[str] = frozenset(),
) -> list[QueueItem]:
    """
    Filter *pool* down to the items compatible with *item*.

    *excluded_ids* holds counter-items this item has already been paired
    with once; a pair is never proposed twice.
    """
    return [
        other for other in pool
        if other.id not in excluded_ids and is_candidate(item, other)
    ]


# ── Ranking ─────────────────────────────────────────────────────────────


def _rank_key(item: QueueItem):
    def key(candidate: QueueItem):
        return abs(item.amount - candidate.amount), candidate.created_at, candidate.id
    return key


def rank_candidates(item: QueueItem, candidates: Iterable[QueueItem]) -> list[QueueItem]:
    """Closest amount first; FIFO among equally close candidates, then by id."""
    return sorted(candidates, key=_rank_key(item))


def select_best_candidate(
    item: QueueItem,
    pool: Iterable[QueueItem],
    excluded_ids: frozenset[str] | set[str] = frozenset(),
) -> QueueItem | None:
    """Return the winning counter-item for *item*, or None if nothing fits."""
    ranked = rank_candidates(item, find_candidates(item, pool, excluded_ids))
    return ranked[0] if ranked else None


# ── Pair helpers ────────────────────────────────────────────────────────


def split_pair(a: QueueItem, b: QueueItem) -> tuple[QueueItem, QueueItem]:
    """Return ``(withdrawal, deposit)`` regardless of argument order."""
    if a.side == QueueSide.WITHDRAWAL:
        return a, b
    return b, a


def match_amount(a: QueueItem, b: QueueItem) -> Decimal:
    return min(a.amount, b.amount)


# ── Score ───────────────────────────────────────────────────────────────


def calculate_match_score(item: QueueItem, candidate: QueueItem, now: datetime) -> int:
    """
    Integer match-quality score, kept on the match for audit.

    ``item`` is the newly queued side; its amount is the denominator of
    the amount term::

        score = (100 + max(0, 100 - |Δ| / item.amount * 100)) / 2
        score += 20                          # same payment method
        score += min(20, combined wait in minutes)

    ``priority`` is deliberately absent from the formula.
    """
    amount_diff = abs(item.amount - candidate.amount)
    amount_score = max(Decimal("0"), Decimal("100") - (amount_diff / item.amount) * 100)
    score = (SCORE_BASE + amount_score) / 2

    if item.payment_method == candidate.payment_method:
        score += SCORE_PAYMENT_METHOD_BONUS

    combined_wait = Decimal(str(item.wait_seconds(now) + candidate.wait_seconds(now)))
    score += min(SCORE_WAIT_CAP, combined_wait / SCORE_WAIT_SECONDS_PER_POINT)

    return int(score.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
