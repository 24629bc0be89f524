"""
Side effects of resolving a payment.

Each effect runs inside the caller's transaction and never commits, so a
failure anywhere rolls back the status change together with the
enrollment, cashback and coupon writes.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.course import Course
from app.models.payment import Payment
from app.services.cashback import calculate_cashback
from app.services.coupon_service import CouponService
from app.services.enrollment_service import EnrollmentService
from app.services.money import ZERO, quantize_money
from app.services.payment_service import PaymentService
from app.services.wallet_service import WalletService

logger = logging.getLogger(__name__)


@dataclass
class CompletionSummary:
    enrollment_created: bool = False
    cashback_credited: Decimal = ZERO
    coupon_applied: bool = False


@dataclass
class FailureSummary:
    wallet_refunded: Decimal = ZERO


class PaymentCompletionEffect:
    """
    PENDING -> COMPLETED as one unit of work:

    1. status, gateway transaction id and completed_at
    2. enrollment for (user, course) if missing
    3. cashback on the price actually paid
    4. one use of the coupon, if any
    """

    def __init__(self, db: AsyncSession, enrollments: Optional[EnrollmentService] = None):
        self.db = db
        self.payments = PaymentService(db)
        self.enrollments = enrollments or EnrollmentService(db)
        self.wallet = WalletService(db)
        self.coupons = CouponService(db)

    async def apply(self, payment: Payment, transaction_id: Optional[int] = None) -> CompletionSummary:
        summary = CompletionSummary()
        self.payments.mark_completed(payment, transaction_id=transaction_id)

        course: Optional[Course] = None
        if payment.course_id:
            course = await self.db.get(Course, payment.course_id)
            _, summary.enrollment_created = await self.enrollments.ensure_enrollment(
                payment.user_id, payment.course_id
            )

        if course is not None:
            cashback = calculate_cashback(course.cashback_type, course.cashback_value, payment.amount)
            if cashback > 0:
                entry = await self.wallet.credit_cashback(
                    payment.user_id,
                    cashback,
                    payment_id=payment.id,
                    course_title=course.title,
                )
                if entry is not None:
                    summary.cashback_credited = cashback

        if payment.coupon_id:
            summary.coupon_applied = await self.coupons.apply_coupon(payment.coupon_id)
            if not summary.coupon_applied:
                # Money already moved; the cap overrun needs a human
                logger.warning(
                    f"Coupon {payment.coupon_id} could not be applied for completed payment {payment.id}"
                )

        await self.db.flush()
        logger.info(
            f"Payment {payment.id} completed: enrollment_created={summary.enrollment_created} "
            f"cashback={summary.cashback_credited} coupon_applied={summary.coupon_applied}"
        )
        return summary


class PaymentFailureEffect:
    """PENDING -> FAILED, returning any wallet funds debited at checkout."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.payments = PaymentService(db)
        self.wallet = WalletService(db)

    async def apply(
        self,
        payment: Payment,
        failure_message: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ) -> FailureSummary:
        summary = FailureSummary()
        self.payments.mark_failed(payment, failure_message, transaction_id=transaction_id)

        wallet_amount = quantize_money(payment.wallet_amount or 0)
        if wallet_amount > 0:
            course_title = None
            if payment.course_id:
                course = await self.db.get(Course, payment.course_id)
                course_title = course.title if course else None
            entry = await self.wallet.refund_payment(
                payment.user_id,
                wallet_amount,
                payment_id=payment.id,
                course_title=course_title,
            )
            if entry is not None:
                summary.wallet_refunded = wallet_amount

        await self.db.flush()
        logger.info(f"Payment {payment.id} failed: {payment.failure_message} (refunded {summary.wallet_refunded})")
        return summary
