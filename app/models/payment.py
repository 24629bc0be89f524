"""Payment model - one row per checkout attempt."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.fsm.states import PaymentMethod, PaymentStatus

if TYPE_CHECKING:
    from app.models.course import Course


class Payment(Base):
    """
    Financial ledger row for a checkout attempt.

    amount is the post-coupon price and never changes after creation.
    Only status, completed_at, gateway ids/response and failure_message mutate.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Nullable: some purchases are non-course services
    course_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("courses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Total price after coupon, including any wallet-funded part
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Part of amount debited from the user's wallet at checkout
    wallet_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0"),
        nullable=False,
    )

    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0"),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(String(3), default="EGP", nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    payment_method: Mapped[str] = mapped_column(
        String(20),
        default=PaymentMethod.CARD.value,
        nullable=False,
    )

    # Our order reference, sent to the gateway as merchant_order_id
    merchant_order_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Gateway-assigned order id
    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
    )

    # Gateway transaction id, set on resolution
    gateway_transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        index=True,
    )

    # Typed initiation response (see paymob_service.GatewayResponse)
    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    failure_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    coupon_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("coupons.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    course: Mapped[Optional["Course"]] = relationship(lazy="raise")

    __table_args__ = (
        Index("ix_payments_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Payment {self.id} status={self.status}>"

    @property
    def gateway_amount(self) -> Decimal:
        """Amount left for the gateway to charge after wallet funds."""
        return max(Decimal("0"), Decimal(self.amount) - Decimal(self.wallet_amount or 0))

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value
