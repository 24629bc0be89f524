"""Wallet ledger - append-only signed transactions."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class WalletTransaction(Base):
    """
    Immutable ledger entry.
    A user's balance is the sum of amount over their rows; it is never stored.
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Positive = credit, negative = debit
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    related_payment_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    admin_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<WalletTransaction {self.type} {self.amount} user={self.user_id}>"
