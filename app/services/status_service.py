"""
Payment Status Service - the read side of the gateway return flow.

The user may land back on the site before the webhook arrives, so a
recent PENDING payment is reported with a hint to poll again instead of
as a failure. Nothing here changes payment status.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.fsm.states import PaymentStatus
from app.models.course import Course
from app.models.payment import Payment
from app.services.errors import CheckoutValidationError, PaymentForbiddenError, PaymentNotFoundError
from app.services.money import as_utc, utcnow
from app.services.payment_service import PaymentService
from app.services.paymob_service import classify_failure
from app.services.reconciliation_service import parse_transaction_id

logger = logging.getLogger(__name__)

MISSING_IDENTIFIERS = "يجب توفير معرف الدورة أو معرف الطلب أو معرف المعاملة"
PAYMENT_NOT_FOUND = "لم يتم العثور على عملية دفع"
NOT_YOUR_PAYMENT = "لا يمكنك عرض هذه المعاملة"
INVALID_TRANSACTION_ID = "معرف المعاملة غير صالح"


@dataclass
class PollingHint:
    time_since_creation_ms: int
    is_recent_pending: bool
    poll_interval_ms: Optional[int]
    failure_kind: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeSinceCreation": self.time_since_creation_ms,
            "isRecentPending": self.is_recent_pending,
            "shouldPoll": self.is_recent_pending,
            "pollIntervalMs": self.poll_interval_ms,
            "failureKind": self.failure_kind,
        }


def polling_hint(payment: Payment, now: Optional[datetime] = None) -> PollingHint:
    now = now or utcnow()
    elapsed_ms = max(0, int((now - as_utc(payment.created_at)).total_seconds() * 1000))
    recent = (
        payment.status == PaymentStatus.PENDING.value
        and elapsed_ms < settings.pending_poll_window_seconds * 1000
    )
    failure_kind = None
    if payment.status == PaymentStatus.FAILED.value:
        failure_kind = classify_failure(payment.failure_message).value

    return PollingHint(
        time_since_creation_ms=elapsed_ms,
        is_recent_pending=recent,
        poll_interval_ms=settings.poll_interval_ms if recent else None,
        failure_kind=failure_kind,
    )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def serialize_payment(payment: Payment, course: Optional[Course] = None) -> Dict[str, Any]:
    """Client view of a payment. Money as float, gateway ids as strings."""
    return {
        "id": payment.id,
        "userId": payment.user_id,
        "courseId": payment.course_id,
        "amount": float(payment.amount),
        "walletAmount": float(payment.wallet_amount or 0),
        "discountAmount": float(payment.discount_amount or 0),
        "currency": payment.currency,
        "status": payment.status,
        "paymentMethod": payment.payment_method,
        "merchantOrderId": payment.merchant_order_id,
        "gatewayOrderId": payment.gateway_order_id,
        "gatewayTransactionId": (
            str(payment.gateway_transaction_id) if payment.gateway_transaction_id is not None else None
        ),
        "failureMessage": payment.failure_message,
        "createdAt": _isoformat(payment.created_at),
        "completedAt": _isoformat(payment.completed_at),
        "course": {"id": course.id, "title": course.title} if course else None,
    }


class PaymentStatusService:
    """Service for the return-flow status check."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.payments = PaymentService(db)

    async def check_status(
        self,
        user_id: str,
        course_id: Optional[str] = None,
        merchant_order_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Latest payment of this user matching any identifier, plus polling
        metadata. Raises CheckoutValidationError, PaymentNotFoundError or
        PaymentForbiddenError.
        """
        if not (course_id or merchant_order_id or transaction_id):
            raise CheckoutValidationError("VALIDATION_ERROR", MISSING_IDENTIFIERS)

        parsed_transaction_id: Optional[int] = None
        if transaction_id:
            parsed_transaction_id = parse_transaction_id(transaction_id)
            if parsed_transaction_id is None:
                raise CheckoutValidationError("VALIDATION_ERROR", INVALID_TRANSACTION_ID)

        payment = await self.payments.find_latest(
            user_id=user_id,
            course_id=course_id,
            order_id=merchant_order_id,
            transaction_id=parsed_transaction_id,
        )

        if payment is None and (merchant_order_id or parsed_transaction_id is not None):
            # Identifiers that name exactly one payment: tell a foreign
            # owner apart from a missing record.
            foreign = await self.payments.find_latest(
                order_id=merchant_order_id,
                transaction_id=parsed_transaction_id,
            )
            if foreign is not None and foreign.user_id != user_id:
                logger.warning(f"User {user_id} requested status of payment {foreign.id} owned by another user")
                raise PaymentForbiddenError(NOT_YOUR_PAYMENT)

        if payment is None:
            logger.info(
                f"No payment for user {user_id} (course={course_id}, order={merchant_order_id}, "
                f"transaction={transaction_id})"
            )
            raise PaymentNotFoundError(PAYMENT_NOT_FOUND)

        course = await self.db.get(Course, payment.course_id) if payment.course_id else None
        hint = polling_hint(payment, now)

        data = serialize_payment(payment, course)
        data["_metadata"] = hint.to_dict()

        logger.info(
            f"Status check for payment {payment.id}: {payment.status} "
            f"({hint.time_since_creation_ms}ms old, poll={hint.is_recent_pending})"
        )
        return data
