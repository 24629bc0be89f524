"""
Coupon Service - coupon validation, discount math and usage accounting.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.fsm.states import CouponType, PaymentStatus
from app.models.coupon import Coupon, normalize_coupon_code
from app.models.payment import Payment
from app.services.money import ZERO, Number, as_utc, quantize_money, to_decimal, utcnow

logger = logging.getLogger(__name__)

INVALID_CODE = "Invalid coupon code"
EXPIRED = "Coupon has expired"
NOT_YET_VALID = "Coupon is not yet valid"
USAGE_LIMIT_EXCEEDED = "Coupon usage limit exceeded"
ALREADY_USED = "You have already used this coupon"
VALIDATION_FAILED = "Error validating coupon"


@dataclass
class CouponValidationResult:
    """Outcome of a coupon check. Invalid coupons are data, not exceptions."""
    is_valid: bool
    discount: Decimal
    discount_type: str
    final_amount: Decimal
    coupon: Optional[Coupon] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "isValid": self.is_valid,
            "discount": float(self.discount),
            "discountType": self.discount_type,
            "finalAmount": float(self.final_amount),
        }
        if self.coupon is not None:
            data["coupon"] = {
                "id": self.coupon.id,
                "code": self.coupon.code,
                "type": self.coupon.type,
                "amount": float(self.coupon.amount),
            }
        if self.error:
            data["error"] = self.error
        return data


def _invalid(price: Decimal, error: str) -> CouponValidationResult:
    return CouponValidationResult(
        is_valid=False,
        discount=ZERO,
        discount_type=CouponType.FIXED.value,
        final_amount=price,
        error=error,
    )


def evaluate_coupon(
    coupon: Optional[Coupon],
    course_price: Number,
    prior_completed_usage: int = 0,
    now: Optional[datetime] = None,
) -> CouponValidationResult:
    """
    Check a coupon against a price. Pure: no I/O, no usage consumed.

    Rules short-circuit in order: active, expiry, start date,
    global cap, per-user cap.
    """
    price = quantize_money(course_price)
    now = now or utcnow()

    if coupon is None or not coupon.is_active:
        return _invalid(price, INVALID_CODE)

    if coupon.end_date is not None and now > as_utc(coupon.end_date):
        return _invalid(price, EXPIRED)

    if now < as_utc(coupon.start_date):
        return _invalid(price, NOT_YET_VALID)

    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        return _invalid(price, USAGE_LIMIT_EXCEEDED)

    if coupon.max_uses_per_user > 0 and prior_completed_usage >= coupon.max_uses_per_user:
        return _invalid(price, ALREADY_USED)

    amount = to_decimal(coupon.amount)
    if coupon.type == CouponType.PERCENTAGE.value:
        discount = quantize_money(price * amount / 100)
    else:
        # Never discount below zero
        discount = quantize_money(min(amount, price))

    final_amount = max(ZERO, price - discount)

    return CouponValidationResult(
        is_valid=True,
        discount=discount,
        discount_type=coupon.type,
        final_amount=quantize_money(final_amount),
        coupon=coupon,
    )


class CouponService:
    """Service for coupon lookups and usage accounting."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(
            select(Coupon).where(Coupon.code == normalize_coupon_code(code))
        )
        return result.scalar_one_or_none()

    async def count_completed_usage(self, coupon_id: str, user_id: str) -> int:
        """Completed payments by this user that used the coupon."""
        result = await self.db.execute(
            select(func.count(Payment.id)).where(
                Payment.user_id == user_id,
                Payment.coupon_id == coupon_id,
                Payment.status == PaymentStatus.COMPLETED.value,
            )
        )
        return int(result.scalar_one())

    async def validate_coupon(
        self,
        code: str,
        course_price: Number,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CouponValidationResult:
        """Look up a coupon by code and evaluate it for this user."""
        try:
            coupon = await self.get_by_code(code)
            usage = 0
            if coupon is not None and user_id:
                usage = await self.count_completed_usage(coupon.id, user_id)
        except SQLAlchemyError as e:
            logger.error(f"Error validating coupon {code!r}: {e}", exc_info=True)
            return _invalid(quantize_money(course_price), VALIDATION_FAILED)

        return evaluate_coupon(coupon, course_price, usage, now=now)

    async def apply_coupon(self, coupon_id: str) -> bool:
        """
        Record one use of a coupon.

        Only called once a payment is COMPLETED. The UPDATE is guarded by
        max_uses so used_count never exceeds the cap.
        """
        result = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Coupon {coupon_id} not incremented: missing or usage cap reached")
            return False
        return True
