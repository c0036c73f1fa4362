"""
Shared test fixtures for the P2P settlement queue.

Provides mock async session factories (healthy, failing and slow), a queue
item factory, a queue engine wired to those doubles, and an async HTTP
test client.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from p2p_settlement.config import settings
from p2p_settlement.models.queue_item import QueueItem, QueueSide
from p2p_settlement.queue_engine.engine import QueueEngine
from p2p_settlement.queue_engine.store import QueueStore


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# --- Mock Database Session ---


def _make_session(rowcount: int = 1) -> AsyncMock:
    """AsyncMock session whose statements each touch *rowcount* rows."""
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.expunge_all = MagicMock()

    result = MagicMock()
    result.rowcount = rowcount
    session.execute = AsyncMock(return_value=result)

    # Make session.begin() return an async context manager
    begin_cm = AsyncMock()
    begin_cm.__aenter__ = AsyncMock(return_value=None)
    begin_cm.__aexit__ = AsyncMock(return_value=False)
    session.begin = MagicMock(return_value=begin_cm)

    return session


def _factory_for(session):
    """Session factory that returns a context manager yielding *session*."""

    class _SessionCM:
        async def __aenter__(self):
            return session

        async def __aexit__(self, *args):
            pass

    def factory():
        return _SessionCM()

    return factory


@pytest.fixture
def mock_session():
    return _make_session()


@pytest.fixture
def mock_session_factory(mock_session):
    return _factory_for(mock_session)


@pytest.fixture
def failing_session():
    """Session whose every statement raises a database error."""
    session = _make_session()
    session.execute = AsyncMock(
        side_effect=OperationalError("UPDATE queue_items", {}, Exception("connection reset")),
    )
    return session


@pytest.fixture
def failing_session_factory(failing_session):
    return _factory_for(failing_session)


@pytest.fixture
def slow_session_factory():
    """Session whose statements never finish within the store timeout."""
    session = _make_session()

    async def _hang(*args, **kwargs):
        await asyncio.sleep(10)

    session.execute = AsyncMock(side_effect=_hang)
    return _factory_for(session)


# --- Store / Engine ---


@pytest.fixture
def store(mock_session_factory):
    return QueueStore(session_factory=mock_session_factory, timeout=1.0)


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def mock_ledger():
    ledger = AsyncMock()
    ledger.credit = AsyncMock(return_value=Decimal("0"))
    ledger.record_transaction = AsyncMock()
    return ledger


@pytest.fixture
def mock_lock():
    lock = AsyncMock()
    lock.acquire = AsyncMock(return_value=MagicMock())
    lock.release = AsyncMock()
    return lock


@pytest.fixture
def engine(store, mock_session_factory, notifier, mock_lock, mock_ledger):
    return QueueEngine(
        store=store,
        session_factory=mock_session_factory,
        notifier=notifier,
        lock=mock_lock,
        ledger=mock_ledger,
    )


# --- Sample Data ---


def _make_item(side="withdrawal", amount="500.00", payment_method="bank_transfer", **overrides) -> QueueItem:
    """Create a QueueItem with test defaults via the normal constructor."""
    defaults = {
        "side": QueueSide(side),
        "customer_id": "CUST-1",
        "amount": Decimal(str(amount)),
        "payment_method": payment_method,
        "created_at": T0,
    }
    defaults.update(overrides)
    return QueueItem(**defaults)


@pytest.fixture
def make_item():
    """Factory fixture for creating QueueItem instances."""
    return _make_item


@pytest.fixture
def minutes():
    def _minutes(n: int) -> timedelta:
        return timedelta(minutes=n)
    return _minutes


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": settings.ADMIN_API_TOKEN}


# --- HTTP client ---


@pytest_asyncio.fixture
async def client(engine):
    """
    Async HTTP test client with the app's queue engine replaced by one
    wired to test doubles.  The lifespan does not run under ASGITransport.
    """
    from p2p_settlement.main import app

    app.state.queue_engine = engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app.state.queue_engine
