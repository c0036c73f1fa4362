"""
P2P Settlement Queue — FastAPI application entry point.

Configures the app, middleware, and registers all API routers.  The
lifespan owns the QueueEngine: it loads the working set on start-up, runs
the periodic maintenance cycle, and tears everything down on shutdown.
Run it as one worker process: the engine keeps the queue in memory and
is its only writer.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from p2p_settlement.api import admin, queue
from p2p_settlement.api.errors import queue_error_handler
from p2p_settlement.config import settings
from p2p_settlement.queue_engine.engine import QueueEngine
from p2p_settlement.queue_engine.exceptions import QueueError

logger = logging.getLogger(__name__)


def build_engine() -> QueueEngine:
    balance_validator = None
    if settings.QUEUE_REQUIRE_WITHDRAWAL_BALANCE:
        from p2p_settlement.services.ledger_service import LedgerBalanceValidator
        balance_validator = LedgerBalanceValidator()
    return QueueEngine(balance_validator=balance_validator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    from p2p_settlement.database import engine
    from p2p_settlement.redis_client import redis

    queue_engine = build_engine()
    await queue_engine.start()
    app.state.queue_engine = queue_engine
    maintenance = asyncio.create_task(
        queue_engine.maintenance_loop(settings.QUEUE_MAINTENANCE_INTERVAL_SECONDS),
    )

    yield

    maintenance.cancel()
    try:
        await maintenance
    except asyncio.CancelledError:
        pass
    queue_engine.close()
    await engine.dispose()
    await redis.aclose()


app = FastAPI(
    title=settings.APP_NAME,
    description="Peer-to-peer settlement queue matching customer withdrawals with deposits.",
    version="0.1.0",
    lifespan=lifespan,
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(QueueError, queue_error_handler)

# --- Routers ---
app.include_router(queue.router, prefix="/api/v1/queue", tags=["Queue"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers and monitoring."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": "0.1.0",
    }
