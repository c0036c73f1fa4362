"""
Ledger service — customer balances and transaction records.

The settlement executor is the only caller.  Every method works inside the
session it is handed, so the balance change, the transaction records and
the queue status updates of one settlement commit (or roll back) together.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.models.ledger import (
    CustomerAccount,
    LedgerTransaction,
    LedgerTransactionType,
)

logger = logging.getLogger(__name__)


class InsufficientBalance(Exception):
    """Debit would take a customer balance below zero."""


def _positive(amount: Decimal) -> Decimal:
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValueError(f"Ledger amounts must be positive, got {amount}")
    return amount


class LedgerService:
    """Balance and transaction-record operations on ``customer_accounts``."""

    async def get_balance(self, session: AsyncSession, customer_id: str) -> Decimal:
        result = await session.execute(
            select(CustomerAccount.balance).where(CustomerAccount.customer_id == customer_id)
        )
        balance = result.scalar_one_or_none()
        return balance if balance is not None else Decimal("0")

    async def credit(self, session: AsyncSession, customer_id: str, amount: Decimal) -> Decimal:
        """Add *amount* to the customer's balance, opening the account if needed."""
        amount = _positive(amount)
        result = await session.execute(
            update(CustomerAccount)
            .where(CustomerAccount.customer_id == customer_id)
            .values(
                balance=CustomerAccount.balance + amount,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(CustomerAccount.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            session.add(CustomerAccount(customer_id=customer_id, balance=amount))
            await session.flush()
            new_balance = amount
        logger.info("Credited %s to %s (balance %s)", amount, customer_id, new_balance)
        return new_balance

    async def debit(self, session: AsyncSession, customer_id: str, amount: Decimal) -> Decimal:
        """
        Subtract *amount* from the customer's balance.

        The ``balance >= amount`` guard lives in the UPDATE itself so two
        concurrent debits cannot both pass a stale check.
        """
        amount = _positive(amount)
        result = await session.execute(
            update(CustomerAccount)
            .where(
                CustomerAccount.customer_id == customer_id,
                CustomerAccount.balance >= amount,
            )
            .values(
                balance=CustomerAccount.balance - amount,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(CustomerAccount.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise InsufficientBalance(
                f"Customer {customer_id} cannot be debited {amount}",
            )
        logger.info("Debited %s from %s (balance %s)", amount, customer_id, new_balance)
        return new_balance

    async def record_transaction(
        self,
        session: AsyncSession,
        customer_id: str,
        amount: Decimal,
        kind: LedgerTransactionType | str,
        reference: str | None,
        notes: str | None = None,
    ) -> LedgerTransaction:
        """Append a signed transaction record (credits positive, debits negative)."""
        kind = LedgerTransactionType(kind)
        record = LedgerTransaction(
            customer_id=customer_id,
            amount=Decimal(str(amount)),
            transaction_type=kind.value,
            reference_id=reference,
            notes=notes,
            created_at=datetime.now(timezone.utc),
        )
        session.add(record)
        await session.flush()
        return record


ledger_service = LedgerService()


class LedgerBalanceValidator:
    """
    Enqueue-time check that a withdrawing customer holds the amount.

    Plugged into the queue engine as its ``balance_validator`` when
    ``QUEUE_REQUIRE_WITHDRAWAL_BALANCE`` is enabled.
    """

    def __init__(self, session_factory=None, ledger: LedgerService | None = None):
        self._session_factory = session_factory
        self.ledger = ledger or ledger_service

    @property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from p2p_settlement.database import async_session
        return async_session

    async def __call__(self, customer_id: str, amount: Decimal) -> bool:
        async with self.session_factory() as session:
            balance = await self.ledger.get_balance(session, customer_id)
        return balance >= amount
