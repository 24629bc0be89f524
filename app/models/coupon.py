"""Coupon model - discount rules."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.database import Base
from app.fsm.states import CouponType


class Coupon(Base):
    """
    Discount coupon.
    code is unique and stored upper-case; lookups normalize the same way.
    """

    __tablename__ = "coupons"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    type: Mapped[str] = mapped_column(
        String(20),
        default=CouponType.PERCENTAGE.value,
        nullable=False,
    )

    # Percent for PERCENTAGE, currency amount for FIXED
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    max_uses_per_user: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # None = no expiry
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @validates("code")
    def _normalize_code(self, key: str, value: str) -> str:
        return normalize_coupon_code(value)

    def __repr__(self) -> str:
        return f"<Coupon {self.code} {self.type} {self.amount}>"


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()
