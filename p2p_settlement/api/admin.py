"""
Admin endpoints — the human approval gate for proposed matches.

Every route here requires the ``X-Admin-Token`` header.
"""

import logging

from fastapi import APIRouter, Depends

from p2p_settlement.api.deps import get_engine, require_admin
from p2p_settlement.models.match import MatchStatus
from p2p_settlement.queue_engine.config import SETTLEMENT_FAILURE_NOTE_PREFIX
from p2p_settlement.queue_engine.engine import QueueEngine
from p2p_settlement.schemas.queue import (
    QueueMatchListResponse,
    QueueMatchResponse,
    ReasonRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


def _match_list(matches) -> QueueMatchListResponse:
    rows = [QueueMatchResponse.model_validate(match) for match in matches]
    return QueueMatchListResponse(matches=rows, total=len(rows))


@router.get("/matches", response_model=QueueMatchListResponse)
async def list_matches(
    status: MatchStatus = MatchStatus.PENDING,
    engine: QueueEngine = Depends(get_engine),
):
    """Matches in *status* (default pending), best score first, then oldest."""
    matches = sorted(
        engine.store.list_matches(status),
        key=lambda m: (-m.score, m.created_at),
    )
    return _match_list(matches)


@router.post("/matches/{match_id}/approve", response_model=QueueMatchResponse)
async def approve_match(match_id: str, engine: QueueEngine = Depends(get_engine)):
    """Approve a pending match; settlement runs before the response is returned."""
    match = await engine.approve(match_id)
    logger.info("Admin approved match %s", match_id)
    return QueueMatchResponse.model_validate(match)


@router.post("/matches/{match_id}/reject", response_model=QueueMatchResponse)
async def reject_match(
    match_id: str,
    payload: ReasonRequest | None = None,
    engine: QueueEngine = Depends(get_engine),
):
    """Reject a pending match; both items return to the pool."""
    match = await engine.reject(match_id, payload.reason if payload else None)
    logger.info("Admin rejected match %s", match_id)
    return QueueMatchResponse.model_validate(match)


@router.get("/reconciliation", response_model=QueueMatchListResponse)
async def list_failed_settlements(engine: QueueEngine = Depends(get_engine)):
    """
    Failed matches whose settlement needs a human.

    Only failures carrying a settlement reason are listed; rejected and
    cancelled matches moved no money.
    """
    matches = [
        match for match in engine.store.list_matches(MatchStatus.FAILED)
        if match.notes and match.notes.startswith(SETTLEMENT_FAILURE_NOTE_PREFIX)
    ]
    return _match_list(matches)
