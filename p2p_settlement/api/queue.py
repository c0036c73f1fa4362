"""
Queue endpoints — enqueue, list, inspect, edit and cancel queue items.

Enqueue flow:
  1. Validate the request body (schema)
  2. Queue the item through the engine (write-through to PostgreSQL)
  3. Match it synchronously against the opposite side
  4. Return the item and the match, if one was created
"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status

from p2p_settlement.api.deps import get_engine, require_admin
from p2p_settlement.models.queue_item import QueueItemStatus, QueueSide
from p2p_settlement.queue_engine.engine import QueueEngine
from p2p_settlement.schemas.queue import (
    EnqueueRequest,
    EnqueueResponse,
    ItemUpdateRequest,
    QueueItemListResponse,
    QueueItemResponse,
    QueueMatchResponse,
    QueueStatsResponse,
    ReasonRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _enqueue(side: QueueSide, payload: EnqueueRequest, engine: QueueEngine) -> EnqueueResponse:
    item, match = await engine.enqueue(
        side,
        customer_id=payload.customer_id,
        amount=payload.amount,
        payment_method=payload.payment_method,
        payment_details=payload.payment_details,
        priority=payload.priority,
        notes=payload.notes,
        routing=payload.telegram.model_dump(exclude_none=True) if payload.telegram else None,
    )
    return EnqueueResponse(
        item=QueueItemResponse.model_validate(item),
        match=QueueMatchResponse.model_validate(match) if match is not None else None,
    )


# ---------------------------------------------------------------------------
# POST /withdrawals, /deposits — Enqueue
# ---------------------------------------------------------------------------


@router.post("/withdrawals", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_withdrawal(
    payload: EnqueueRequest,
    engine: QueueEngine = Depends(get_engine),
):
    """Queue a withdrawal and try to pair it with a pending deposit."""
    return await _enqueue(QueueSide.WITHDRAWAL, payload, engine)


@router.post("/deposits", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_deposit(
    payload: EnqueueRequest,
    engine: QueueEngine = Depends(get_engine),
):
    """Queue a deposit and try to pair it with a pending withdrawal."""
    return await _enqueue(QueueSide.DEPOSIT, payload, engine)


# ---------------------------------------------------------------------------
# GET /items — List with filters
# ---------------------------------------------------------------------------


@router.get("/items", response_model=QueueItemListResponse)
async def list_items(
    side: QueueSide | None = None,
    item_status: QueueItemStatus | None = Query(None, alias="status"),
    payment_method: str | None = None,
    min_amount: Decimal | None = Query(None, ge=0),
    max_amount: Decimal | None = Query(None, ge=0),
    customer_id: str | None = None,
    engine: QueueEngine = Depends(get_engine),
):
    """List queue items, oldest first; every filter given must match."""
    items = [
        QueueItemResponse.model_validate(item)
        for item in engine.store.list_items(
            side=side,
            status=item_status,
            payment_method=payment_method,
            min_amount=min_amount,
            max_amount=max_amount,
            customer_id=customer_id,
        )
    ]
    return QueueItemListResponse(items=items, total=len(items))


@router.get("/items/{item_id}", response_model=QueueItemResponse)
async def get_item(item_id: str, engine: QueueEngine = Depends(get_engine)):
    return QueueItemResponse.model_validate(engine.store.get(item_id))


# ---------------------------------------------------------------------------
# PATCH /items/{id}, POST /items/{id}/cancel — Admin edits
# ---------------------------------------------------------------------------


@router.patch(
    "/items/{item_id}",
    response_model=QueueItemResponse,
    dependencies=[Depends(require_admin)],
)
async def update_item(
    item_id: str,
    payload: ItemUpdateRequest,
    engine: QueueEngine = Depends(get_engine),
):
    """Edit notes and/or priority.  Amount, side and customer are immutable."""
    item = await engine.update_item(item_id, **payload.model_dump(exclude_unset=True))
    return QueueItemResponse.model_validate(item)


@router.post(
    "/items/{item_id}/cancel",
    response_model=QueueItemResponse,
    dependencies=[Depends(require_admin)],
)
async def cancel_item(
    item_id: str,
    payload: ReasonRequest | None = None,
    engine: QueueEngine = Depends(get_engine),
):
    """
    Cancel a pending or matched item.

    A pending match the item was part of is failed and the counter-item
    goes back to the pool.
    """
    item = await engine.cancel_item(item_id, payload.reason if payload else None)
    return QueueItemResponse.model_validate(item)


# ---------------------------------------------------------------------------
# GET /stats
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=QueueStatsResponse)
async def get_stats(engine: QueueEngine = Depends(get_engine)):
    return engine.stats()
