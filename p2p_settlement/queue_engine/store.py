"""
Queue store — the single source of truth for queue items and matches.

Holds the in-memory working set (synchronous lookups for the matcher and
the stats reporter) and mirrors every mutation to PostgreSQL
(``queue_items`` / ``queue_matches``) *before* the in-memory state is
changed.  If the database write fails or times out, memory is left exactly
as it was and ``PersistenceError`` is raised.

Updates that change a status are guarded by the status the store believes
the row has (``WHERE id = :id AND status = :expected``).  A row count other
than one means another writer got there first, which is treated as a failed
write.

Only the store mutates the collections; callers go through its methods.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, Sequence

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from p2p_settlement.models.match import (
    MATCH_TERMINAL_STATUSES,
    MatchStatus,
    QueueMatch,
)
from p2p_settlement.models.queue_item import (
    TERMINAL_STATUSES,
    QueueItem,
    QueueItemStatus,
    QueueSide,
)
from p2p_settlement.queue_engine.config import (
    CLEANUP_MAX_AGE,
    DEFAULT_PRIORITY,
    MAX_AMOUNT,
    PERSISTENCE_TIMEOUT_SECONDS,
)
from p2p_settlement.queue_engine.exceptions import (
    InvalidTransition,
    NotFound,
    PersistenceError,
    ValidationError,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

BeforeCommit = Callable[["AsyncSession"], Awaitable[None]]

# Only these item fields may change after creation
MUTABLE_ITEM_FIELDS = frozenset({"status", "matched_with", "notes", "priority", "updated_at"})
MUTABLE_MATCH_FIELDS = frozenset({"status", "notes", "completed_at"})

_UNSET = object()


def _row(obj: QueueItem | QueueMatch) -> dict:
    """Column values of an ORM instance, keyed by column name."""
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


class QueueStore:
    """
    Write-through store for queue items and matches.

    Constructed once per process with a session factory, hydrated with
    ``load()``, and torn down with ``close()``.
    """

    def __init__(self, session_factory=None, timeout: float = PERSISTENCE_TIMEOUT_SECONDS):
        """
        Args:
            session_factory: Async session factory for DB access
                             (defaults to ``p2p_settlement.database.async_session``).
            timeout: Upper bound in seconds for one persistence round-trip.
        """
        self._session_factory = session_factory
        self._timeout = timeout
        self._items: dict[str, QueueItem] = {}
        self._matches: dict[str, QueueMatch] = {}
        # item id -> every counter-item it has ever been matched with
        self._partners: dict[str, set[str]] = {}

    @property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from p2p_settlement.database import async_session
        return async_session

    # ── lifecycle ───────────────────────────────────────────────────────

    async def load(self, horizon: timedelta = CLEANUP_MAX_AGE, now: datetime | None = None) -> None:
        """
        Hydrate the working set from the durable store.

        Loads every non-terminal item and match, plus terminal ones that
        finished within *horizon* (the same horizon ``cleanup`` keeps), and
        the pairing history of the open items.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - horizon
        open_items = [s for s in QueueItemStatus if s not in TERMINAL_STATUSES]
        open_matches = [s for s in MatchStatus if s not in MATCH_TERMINAL_STATUSES]

        try:
            async with self.session_factory() as session:
                items = (await session.execute(
                    select(QueueItem)
                    .where(or_(QueueItem.status.in_(open_items), QueueItem.updated_at >= cutoff))
                    .order_by(QueueItem.created_at)
                )).scalars().all()
                matches = (await session.execute(
                    select(QueueMatch)
                    .where(or_(QueueMatch.status.in_(open_matches), QueueMatch.completed_at >= cutoff))
                    .order_by(QueueMatch.created_at)
                )).scalars().all()
                open_ids = select(QueueItem.id).where(QueueItem.status.in_(open_items))
                pairs = (await session.execute(
                    select(QueueMatch.withdrawal_item_id, QueueMatch.deposit_item_id)
                    .where(or_(
                        QueueMatch.withdrawal_item_id.in_(open_ids),
                        QueueMatch.deposit_item_id.in_(open_ids),
                    ))
                )).all()
                session.expunge_all()
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Could not load queue state: {exc}") from exc

        self._items = {item.id: item for item in items}
        self._matches = {}
        self._partners = {}
        for match in matches:
            self._register_match(match)
        for withdrawal_id, deposit_id in pairs:
            self._link(withdrawal_id, deposit_id)

        logger.info(
            "Queue store loaded: %d items, %d matches", len(self._items), len(self._matches),
        )

    def close(self) -> None:
        """Drop the working set.  The store must be re-loaded before reuse."""
        self._items.clear()
        self._matches.clear()
        self._partners.clear()

    # ── persistence core ────────────────────────────────────────────────

    async def _commit(
        self,
        statements: Sequence[tuple[object, bool]],
        before_commit: BeforeCommit | None = None,
    ) -> None:
        """
        Execute *statements* in one transaction, bounded by the timeout.

        Each entry is ``(statement, guarded)``; a guarded statement must
        touch exactly one row.
        """

        async def _run() -> None:
            async with self.session_factory() as session:
                async with session.begin():
                    for stmt, guarded in statements:
                        result = await session.execute(stmt)
                        if guarded and result.rowcount != 1:
                            raise PersistenceError(
                                "Concurrent modification detected; row changed underneath the store",
                            )
                    if before_commit is not None:
                        await before_commit(session)

        try:
            await asyncio.wait_for(_run(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                f"Persistence timed out after {self._timeout}s",
            ) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Persistence failed: {exc}") from exc

    async def apply(
        self,
        changes: Sequence[tuple[QueueItem | QueueMatch, dict]] = (),
        inserts: Sequence[QueueItem | QueueMatch] = (),
        before_commit: BeforeCommit | None = None,
    ) -> None:
        """
        Atomically persist *inserts* and *changes*, then commit them to memory.

        ``changes`` pairs an object already in the store with the column
        values to write.  Status changes are validated against the state
        machines before anything is sent to the database.  ``before_commit``
        runs inside the same database transaction.
        """
        statements: list[tuple[object, bool]] = []

        for obj in inserts:
            statements.append((insert(type(obj)).values(**_row(obj)), False))

        for obj, values in changes:
            model = type(obj)
            allowed = MUTABLE_ITEM_FIELDS if model is QueueItem else MUTABLE_MATCH_FIELDS
            illegal = set(values) - allowed
            if illegal:
                raise ValidationError(
                    f"Immutable fields cannot be changed: {', '.join(sorted(illegal))}",
                )
            stmt = (
                update(model)
                .where(model.id == obj.id)
                .execution_options(synchronize_session=False)
            )
            guarded = "status" in values
            if guarded:
                if not model.is_valid_transition(obj.status, values["status"]):
                    raise InvalidTransition(
                        f"Invalid transition: {obj.status.value} -> {values['status'].value}",
                        id=obj.id,
                    )
                stmt = stmt.where(model.status == obj.status)
            statements.append((stmt.values(**values), guarded))

        await self._commit(statements, before_commit)

        for obj in inserts:
            if isinstance(obj, QueueMatch):
                self._register_match(obj)
            else:
                self._items[obj.id] = obj
        for obj, values in changes:
            for key, value in values.items():
                setattr(obj, key, value)

    # ── items ───────────────────────────────────────────────────────────

    @staticmethod
    def build_item(
        side: QueueSide | str,
        customer_id: str,
        amount: Decimal | str | int,
        payment_method: str,
        payment_details: str = "",
        priority: int = DEFAULT_PRIORITY,
        notes: str | None = None,
    ) -> QueueItem:
        """Validate the fields of a new item and build it, unsaved, in ``pending``."""
        return QueueItem(
            side=_coerce_side(side),
            customer_id=_require_text(customer_id, "customer_id"),
            amount=_coerce_amount(amount),
            payment_method=_require_text(payment_method, "payment_method"),
            payment_details=payment_details or "",
            priority=_coerce_priority(priority),
            notes=notes,
        )

    async def add(
        self,
        side: QueueSide | str,
        customer_id: str,
        amount: Decimal | str | int,
        payment_method: str,
        payment_details: str = "",
        priority: int = DEFAULT_PRIORITY,
        notes: str | None = None,
    ) -> QueueItem:
        """
        Create a ``pending`` item and persist it.

        Fields are validated here so nothing reaches the database (or
        memory) unless it is a well-formed item.
        """
        item = self.build_item(
            side, customer_id, amount, payment_method, payment_details, priority, notes,
        )
        return await self.insert(item)

    async def insert(self, item: QueueItem) -> QueueItem:
        """Persist an item built by ``build_item``."""
        await self.apply(inserts=[item])
        logger.info(
            "Queued %s %s: %s via %s for %s",
            item.side.value, item.id, item.amount, item.payment_method, item.customer_id,
        )
        return item

    def get(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise NotFound(f"Queue item {item_id} not found", item_id=item_id)
        return item

    def list_items(
        self,
        side: QueueSide | str | None = None,
        status: QueueItemStatus | str | None = None,
        payment_method: str | None = None,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
        customer_id: str | None = None,
    ) -> Iterator[QueueItem]:
        """
        Items matching every given filter, oldest first.

        The ordering snapshot is taken at call time; the returned iterator
        is lazy and can be consumed once.
        """
        side = QueueSide(side) if side is not None else None
        status = QueueItemStatus(status) if status is not None else None
        snapshot = sorted(self._items.values(), key=lambda i: (i.created_at, i.id))
        return (
            item for item in snapshot
            if (side is None or item.side == side)
            and (status is None or item.status == status)
            and (payment_method is None or item.payment_method == payment_method)
            and (min_amount is None or item.amount >= min_amount)
            and (max_amount is None or item.amount <= max_amount)
            and (customer_id is None or item.customer_id == customer_id)
        )

    def all_items(self) -> list[QueueItem]:
        return list(self._items.values())

    async def update_status(
        self,
        item_id: str,
        new_status: QueueItemStatus,
        now: datetime | None = None,
        **extra,
    ) -> QueueItem:
        """Validate and persist a single item transition."""
        item = self.get(item_id)
        values = item.transition_values(QueueItemStatus(new_status), now)
        values.update(extra)
        await self.apply([(item, values)])
        return item

    async def update_metadata(
        self,
        item_id: str,
        notes=_UNSET,
        priority: int | None = None,
    ) -> QueueItem:
        """Change ``notes`` and/or ``priority``; nothing else is editable."""
        item = self.get(item_id)
        values: dict = {}
        if notes is not _UNSET:
            values["notes"] = notes
        if priority is not None:
            values["priority"] = _coerce_priority(priority)
        if not values:
            return item
        values["updated_at"] = datetime.now(timezone.utc)
        await self.apply([(item, values)])
        return item

    # ── matches ─────────────────────────────────────────────────────────

    def get_match(self, match_id: str) -> QueueMatch:
        match = self._matches.get(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found", match_id=match_id)
        return match

    def list_matches(self, status: MatchStatus | str | None = None) -> Iterator[QueueMatch]:
        status = MatchStatus(status) if status is not None else None
        snapshot = sorted(self._matches.values(), key=lambda m: (m.created_at, m.id))
        return (m for m in snapshot if status is None or m.status == status)

    def active_match_for(self, item_id: str) -> QueueMatch | None:
        """The non-terminal match referencing *item_id*, if any."""
        for match in self._matches.values():
            if not match.is_terminal and item_id in match.item_ids:
                return match
        return None

    def partners_of(self, item_id: str) -> frozenset[str]:
        """Counter-items *item_id* has already been matched with."""
        return frozenset(self._partners.get(item_id, ()))

    async def record_match(
        self,
        match: QueueMatch,
        withdrawal: QueueItem,
        deposit: QueueItem,
        now: datetime | None = None,
    ) -> QueueMatch:
        """
        Insert *match* and flip both items to ``matched`` in one transaction.

        ``matched_with`` is set on both sides so the link is bidirectional.
        """
        if withdrawal.side != QueueSide.WITHDRAWAL or deposit.side != QueueSide.DEPOSIT:
            raise ValidationError("A match needs one withdrawal and one deposit")
        if (match.withdrawal_item_id, match.deposit_item_id) != (withdrawal.id, deposit.id):
            raise ValidationError("Match does not reference the given items")
        if deposit.id in self._partners.get(withdrawal.id, ()):
            raise InvalidTransition(
                f"Items {withdrawal.id} and {deposit.id} have already been matched once",
            )

        now = now or datetime.now(timezone.utc)
        w_values = withdrawal.transition_values(QueueItemStatus.MATCHED, now)
        w_values["matched_with"] = deposit.id
        d_values = deposit.transition_values(QueueItemStatus.MATCHED, now)
        d_values["matched_with"] = withdrawal.id

        await self.apply([(withdrawal, w_values), (deposit, d_values)], inserts=[match])
        return match

    async def update_match(self, match_id: str, now: datetime | None = None, **fields) -> QueueMatch:
        """Persist *fields* on a match; a ``status`` key is validated first."""
        match = self.get_match(match_id)
        values = dict(fields)
        if "status" in values:
            values.update(match.transition_values(MatchStatus(values["status"]), now))
        await self.apply([(match, values)])
        return match

    # ── housekeeping ────────────────────────────────────────────────────

    def cleanup(self, max_age: timedelta = CLEANUP_MAX_AGE, now: datetime | None = None) -> dict:
        """
        Drop items and matches that became terminal more than *max_age* ago.

        Age runs from the terminal transition (``updated_at`` for items,
        ``completed_at`` for matches), so a long wait before settling does
        not push a fresh result out of the stats window.

        The durable audit rows are untouched.  Non-terminal records are
        never removed, however old.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - max_age

        stale_items = [
            item_id for item_id, item in self._items.items()
            if item.is_terminal and item.updated_at < cutoff
        ]
        stale_matches = [
            match_id for match_id, match in self._matches.items()
            if match.is_terminal and (match.completed_at or match.created_at) < cutoff
        ]
        for item_id in stale_items:
            del self._items[item_id]
            self._partners.pop(item_id, None)
        for match_id in stale_matches:
            del self._matches[match_id]

        if stale_items or stale_matches:
            logger.info(
                "Cleanup removed %d items and %d matches older than %s",
                len(stale_items), len(stale_matches), max_age,
            )
        return {"items_removed": len(stale_items), "matches_removed": len(stale_matches)}

    # ── internals ───────────────────────────────────────────────────────

    def _register_match(self, match: QueueMatch) -> None:
        self._matches[match.id] = match
        self._link(match.withdrawal_item_id, match.deposit_item_id)

    def _link(self, withdrawal_id: str, deposit_id: str) -> None:
        self._partners.setdefault(withdrawal_id, set()).add(deposit_id)
        self._partners.setdefault(deposit_id, set()).add(withdrawal_id)

    def __len__(self) -> int:
        return len(self._items)


# ── field validation ────────────────────────────────────────────────────


def _coerce_side(side: QueueSide | str) -> QueueSide:
    try:
        return QueueSide(side)
    except ValueError as exc:
        raise ValidationError(f"Unknown queue side: {side!r}", field="side") from exc


def _require_text(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Missing required field: {field}", field=field)
    return str(value).strip()


def _coerce_amount(amount) -> Decimal:
    if amount is None or isinstance(amount, bool):
        raise ValidationError("Missing required field: amount", field="amount")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount!r}", field="amount") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be a positive number", field="amount")
    if value >= MAX_AMOUNT:
        raise ValidationError(f"Amount must be below {MAX_AMOUNT:f}", field="amount")
    try:
        quantized = value.quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount!r}", field="amount") from exc
    if value != quantized:
        raise ValidationError("Amount supports at most two decimal places", field="amount")
    return quantized


def _coerce_priority(priority) -> int:
    if isinstance(priority, bool):
        raise ValidationError("Priority must be an integer", field="priority")
    try:
        return int(priority)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Priority must be an integer", field="priority") from exc
