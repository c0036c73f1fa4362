"""
Customer balance and transaction-record models used by settlement.

``customer_accounts`` holds the running balance per customer;
``ledger_transactions`` is the append-only record of every balance
movement, signed (credits positive, debits negative).
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from p2p_settlement.database import Base


class LedgerTransactionType(str, enum.Enum):
    WITHDRAWAL_MATCHED = "withdrawal_matched"
    DEPOSIT_MATCHED = "deposit_matched"
    CREDIT = "credit"
    DEBIT = "debit"


class CustomerAccount(Base):
    __tablename__ = "customer_accounts"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), nullable=False, default=Decimal("0"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<CustomerAccount {self.customer_id} balance={self.balance}>"


class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), nullable=False,
    )
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # Queue item id the movement settles
    reference_id: Mapped[str | None] = mapped_column(String(36), index=True)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction {self.customer_id} {self.amount} "
            f"{self.transaction_type} ref={self.reference_id}>"
        )
