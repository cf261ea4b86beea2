"""Financial transaction model.

Only the Telegram receipt flow writes transactions in this service; the
dashboard manages the rest of the ledger.
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from kitakita.models.base import Base


class TransactionType(str, enum.Enum):
    """Direction of money movement."""

    EXPENSE = "expense"
    INCOME = "income"


class Transaction(Base):
    """A single ledger entry belonging to a web account."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(
            TransactionType,
            name="transactiontype",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=TransactionType.EXPENSE,
    )

    category: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="other",
    )

    transaction_date: Mapped[date] = mapped_column(
        "date",
        Date,
        nullable=False,
    )

    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Where the entry came from (e.g. "telegram_bot")
    source: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Original parsed receipt, kept for reference
    receipt_data: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(user_id={self.user_id}, name={self.name}, "
            f"amount={self.amount})>"
        )
