"""
Maps queue engine errors onto HTTP responses.
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from p2p_settlement.queue_engine.exceptions import (
    InvalidTransition,
    NotFound,
    PersistenceError,
    QueueError,
    SettlementError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first; InvalidState is covered by InvalidTransition
STATUS_CODES: list[tuple[type[QueueError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SettlementError, status.HTTP_502_BAD_GATEWAY),
]


def status_code_for(exc: QueueError) -> int:
    for error_cls, code in STATUS_CODES:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"code": exc.code, "detail": exc.message}
    field = getattr(exc, "field", None)
    if field:
        body["field"] = field
    return JSONResponse(status_code=code, content=body)
