"""
Payment Service - persistence and lookups for payment records.

Every status change goes through transition(), which checks the edge
against PaymentStateMachine. Nothing here commits.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.fsm.machine import PaymentStateMachine
from app.fsm.states import PaymentMethod, PaymentStatus
from app.models.payment import Payment
from app.services.money import ZERO, Number, quantize_money, utcnow

logger = logging.getLogger(__name__)


def generate_merchant_order_id(user_id: str, course_id: Optional[str]) -> str:
    """Our order reference, unique per checkout attempt."""
    suffix = uuid.uuid4().hex[:12]
    return f"course-{course_id or 'none'}-{user_id}-{suffix}"


class PaymentService:
    """Service for payment records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_pending(
        self,
        user_id: str,
        course_id: Optional[str],
        amount: Number,
        payment_method: PaymentMethod,
        wallet_amount: Number = ZERO,
        discount_amount: Number = ZERO,
        coupon_id: Optional[str] = None,
        currency: Optional[str] = None,
        merchant_order_id: Optional[str] = None,
    ) -> Payment:
        payment = Payment(
            user_id=user_id,
            course_id=course_id,
            amount=quantize_money(amount),
            wallet_amount=quantize_money(wallet_amount),
            discount_amount=quantize_money(discount_amount),
            currency=currency or settings.default_currency,
            status=PaymentStatus.PENDING.value,
            payment_method=payment_method.value,
            merchant_order_id=merchant_order_id or generate_merchant_order_id(user_id, course_id),
            coupon_id=coupon_id,
        )
        self.db.add(payment)
        await self.db.flush()

        logger.info(f"Created pending payment {payment.id} ({payment.merchant_order_id}) for {payment.amount}")
        return payment

    async def get_by_id(self, payment_id: str, for_update: bool = False) -> Optional[Payment]:
        query = select(Payment).where(Payment.id == payment_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_for_gateway_order(
        self,
        gateway_order_id: Optional[str],
        merchant_order_id: Optional[str] = None,
        for_update: bool = True,
    ) -> Optional[Payment]:
        """
        Find the payment a gateway order refers to, locking the row.

        The gateway order id is tried first; merchant_order_id covers
        webhooks that arrive before the gateway id was stored.
        """
        lookups = [
            (Payment.gateway_order_id, gateway_order_id),
            (Payment.merchant_order_id, merchant_order_id),
        ]
        for column, value in lookups:
            if not value:
                continue
            query = select(Payment).where(column == value)
            if for_update:
                query = query.with_for_update()
            result = await self.db.execute(query)
            payment = result.scalar_one_or_none()
            if payment is not None:
                return payment
        return None

    async def record_gateway_initiation(
        self,
        payment: Payment,
        gateway_order_id: str,
        gateway_response: Dict[str, Any],
    ) -> Payment:
        """Store the gateway's order id and typed initiation response."""
        payment.gateway_order_id = gateway_order_id
        payment.gateway_response = gateway_response
        await self.db.flush()
        return payment

    def transition(self, payment: Payment, target: PaymentStatus) -> None:
        """Move a payment along a declared edge. Raises InvalidTransitionError."""
        current = PaymentStatus(payment.status)
        PaymentStateMachine.ensure_transition(current, target)
        payment.status = target.value
        logger.info(f"Payment {payment.id}: {current.value} -> {target.value}")

    def mark_completed(
        self,
        payment: Payment,
        transaction_id: Optional[int] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        self.transition(payment, PaymentStatus.COMPLETED)
        payment.completed_at = completed_at or utcnow()
        if transaction_id is not None:
            payment.gateway_transaction_id = transaction_id
        payment.failure_message = None

    def mark_failed(
        self,
        payment: Payment,
        failure_message: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ) -> None:
        self.transition(payment, PaymentStatus.FAILED)
        payment.failure_message = (failure_message or "Payment failed")[:255]
        if transaction_id is not None:
            payment.gateway_transaction_id = transaction_id

    async def find_pending_for_course(
        self,
        user_id: str,
        course_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Payment]:
        """A recent PENDING payment that should block a second checkout."""
        cutoff = (now or utcnow()) - timedelta(seconds=settings.pending_payment_block_seconds)
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.user_id == user_id,
                Payment.course_id == course_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at >= cutoff,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_latest(
        self,
        user_id: Optional[str] = None,
        course_id: Optional[str] = None,
        order_id: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ) -> Optional[Payment]:
        """
        Most recent payment matching any of the given identifiers.

        course_id only matches together with user_id. order_id matches
        either our merchant order id or the gateway order id. With
        user_id set, every match is restricted to that user.
        """
        matches: List[Any] = []
        if course_id and user_id:
            matches.append(Payment.course_id == course_id)
        if order_id:
            matches.append(Payment.merchant_order_id == order_id)
            matches.append(Payment.gateway_order_id == order_id)
        if transaction_id is not None:
            matches.append(Payment.gateway_transaction_id == transaction_id)

        if not matches:
            return None

        query = select(Payment).where(or_(*matches))
        if user_id:
            query = query.where(Payment.user_id == user_id)

        result = await self.db.execute(
            query.order_by(Payment.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()
