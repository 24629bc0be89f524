"""
Webhook Reconciler - turns verified Paymob callbacks into payment transitions.

Order of checks: event type, payload shape, HMAC, payment lookup (row
locked), idempotency gate, then exactly one effect. The whole unit is
committed once; any exception rolls it back and propagates.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.fsm.machine import PaymentStateMachine
from app.fsm.states import PaymentStatus
from app.services.enrollment_service import EnrollmentService
from app.services.money import ZERO
from app.services.payment_effects import PaymentCompletionEffect, PaymentFailureEffect
from app.services.payment_service import PaymentService
from app.services.paymob_service import PaymobService

logger = logging.getLogger(__name__)

TRANSACTION_EVENT = "TRANSACTION"


class ReconciliationOutcome(str, Enum):
    IGNORED = "ignored"
    INVALID_PAYLOAD = "invalid_payload"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment_id: Optional[str] = None
    user_id: Optional[str] = None
    course_id: Optional[str] = None
    status: Optional[str] = None
    enrollment_created: bool = False
    cashback_credited: Decimal = ZERO

    @property
    def acknowledged(self) -> bool:
        """Outcomes the gateway should not retry."""
        return self.outcome in (
            ReconciliationOutcome.IGNORED,
            ReconciliationOutcome.ALREADY_PROCESSED,
            ReconciliationOutcome.COMPLETED,
            ReconciliationOutcome.FAILED,
        )


# gateway_transaction_id is a signed BIGINT
MAX_TRANSACTION_ID = 2 ** 63 - 1


def parse_transaction_id(value: Any) -> Optional[int]:
    """Gateway transaction ids are integers; ids the column cannot hold are dropped."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        return None
    if not 0 <= parsed <= MAX_TRANSACTION_ID:
        return None
    return parsed


def _order_ids(transaction: Mapping[str, Any]) -> tuple:
    order = transaction.get("order")
    if isinstance(order, Mapping):
        order_id = order.get("id")
        merchant_order_id = order.get("merchant_order_id")
    else:
        order_id = order
        merchant_order_id = None
    gateway_order_id = str(order_id) if order_id not in (None, "") else None
    return gateway_order_id, merchant_order_id or None


def transaction_succeeded(transaction: Mapping[str, Any]) -> bool:
    return transaction.get("success") is True and not transaction.get("error_occured")


def failure_message_for(transaction: Mapping[str, Any]) -> str:
    data = transaction.get("data")
    if isinstance(data, Mapping):
        message = data.get("message") or data.get("txn_response_code")
        if message:
            return str(message)
    return "Payment failed"


class WebhookReconciler:
    """Applies one Paymob TRANSACTION callback to our payment records."""

    def __init__(
        self,
        db: AsyncSession,
        paymob: PaymobService,
        enrollments: Optional[EnrollmentService] = None,
    ):
        self.db = db
        self.paymob = paymob
        self.enrollments = enrollments or EnrollmentService(db)
        self.payments = PaymentService(db)

    async def reconcile(self, payload: Any, signature: Optional[str]) -> ReconciliationResult:
        if not isinstance(payload, Mapping):
            logger.warning("Paymob webhook body is not a JSON object")
            return ReconciliationResult(ReconciliationOutcome.INVALID_PAYLOAD)

        event_type = payload.get("type")
        if event_type != TRANSACTION_EVENT:
            logger.info(f"Ignoring Paymob webhook of type {event_type!r}")
            return ReconciliationResult(ReconciliationOutcome.IGNORED)

        transaction = payload.get("obj")
        if not isinstance(transaction, Mapping):
            logger.warning("Paymob TRANSACTION webhook without obj")
            return ReconciliationResult(ReconciliationOutcome.INVALID_PAYLOAD)

        gateway_order_id, merchant_order_id = _order_ids(transaction)
        if not gateway_order_id and not merchant_order_id:
            logger.warning("Paymob TRANSACTION webhook without order id")
            return ReconciliationResult(ReconciliationOutcome.INVALID_PAYLOAD)

        if not self.paymob.verify_webhook(transaction, signature):
            logger.warning(f"Invalid Paymob webhook signature for order {gateway_order_id}")
            return ReconciliationResult(ReconciliationOutcome.UNAUTHORIZED)

        transaction_id = parse_transaction_id(transaction.get("id"))

        try:
            result = await self._apply(transaction, gateway_order_id, merchant_order_id, transaction_id)
        except Exception:
            await self.db.rollback()
            logger.error(f"Reconciliation failed for order {gateway_order_id}; rolled back", exc_info=True)
            raise

        if result.enrollment_created and result.course_id:
            await self.enrollments.invalidate(result.user_id, result.course_id)

        return result

    async def _apply(
        self,
        transaction: Mapping[str, Any],
        gateway_order_id: Optional[str],
        merchant_order_id: Optional[str],
        transaction_id: Optional[int],
    ) -> ReconciliationResult:
        payment = await self.payments.get_for_gateway_order(gateway_order_id, merchant_order_id)
        if payment is None:
            logger.error(
                f"Paymob webhook for unknown order gateway={gateway_order_id} merchant={merchant_order_id}"
            )
            await self.db.rollback()
            return ReconciliationResult(ReconciliationOutcome.NOT_FOUND)

        if PaymentStateMachine.is_terminal(PaymentStatus(payment.status)):
            payment_id, status = payment.id, payment.status
            logger.info(f"Payment {payment_id} already {status}; webhook ignored")
            # Release the row lock
            await self.db.rollback()
            return ReconciliationResult(
                ReconciliationOutcome.ALREADY_PROCESSED,
                payment_id=payment_id,
                status=status,
            )

        if transaction_succeeded(transaction):
            summary = await PaymentCompletionEffect(self.db, self.enrollments).apply(
                payment, transaction_id=transaction_id
            )
            await self.db.commit()
            return ReconciliationResult(
                ReconciliationOutcome.COMPLETED,
                payment_id=payment.id,
                user_id=payment.user_id,
                course_id=payment.course_id,
                status=payment.status,
                enrollment_created=summary.enrollment_created,
                cashback_credited=summary.cashback_credited,
            )

        await PaymentFailureEffect(self.db).apply(
            payment,
            failure_message_for(transaction),
            transaction_id=transaction_id,
        )
        await self.db.commit()
        return ReconciliationResult(
            ReconciliationOutcome.FAILED,
            payment_id=payment.id,
            user_id=payment.user_id,
            course_id=payment.course_id,
            status=payment.status,
        )
