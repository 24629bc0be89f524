"""
Checkout Service - course purchase initiation.

The pending payment and any wallet debit are committed before the
gateway is called, so no database transaction is held open across the
network round trip. A gateway failure fails the payment and refunds the
wallet in a second transaction.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.fsm.states import PaymentMethod, TransactionType, UserRole
from app.models.course import Course
from app.models.payment import Payment
from app.services.coupon_service import CouponService
from app.services.enrollment_service import EnrollmentService
from app.services.errors import CheckoutValidationError, PaymentGatewayError
from app.services.identity import AuthenticatedUser
from app.services.money import ZERO, quantize_money
from app.services.payment_effects import PaymentCompletionEffect, PaymentFailureEffect
from app.services.payment_service import PaymentService
from app.services.paymob_service import (
    PaymobService,
    RedirectInitiation,
    gateway_response_from_initiation,
)
from app.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

PURCHASE_ROLES = (UserRole.STUDENT, UserRole.ADMIN)

NOT_ALLOWED_TO_PAY = "غير مصرح لك بإجراء عمليات الدفع"
WALLET_NUMBER_REQUIRED = "رقم الهاتف مطلوب للدفع بالمحفظة الإلكترونية"
COURSE_NOT_FOUND = "الدورة غير موجودة أو غير منشورة"
FREE_COURSE = "هذه الدورة مجانية ولا تحتاج لدفع"
ALREADY_ENROLLED = "أنت مسجل في هذه الدورة بالفعل"
PENDING_PAYMENT = "لديك عملية دفع معلقة لهذه الدورة"
OWN_COURSE = "لا يمكنك شراء دورتك الخاصة"
GATEWAY_FAILED = "فشل في بدء عملية الدفع. يرجى المحاولة مرة أخرى"


class CheckoutService:
    """Service for starting a course purchase."""

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
        self.wallet = WalletService(db)
        self.coupons = CouponService(db)

    async def initiate_course_checkout(
        self,
        user: AuthenticatedUser,
        course_id: str,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        wallet_number: Optional[str] = None,
        coupon_code: Optional[str] = None,
        use_wallet: bool = False,
    ) -> Dict[str, Any]:
        """
        Validate the purchase, reserve funds and register the gateway order.

        Raises CheckoutValidationError for rejected requests,
        InsufficientWalletBalanceError if the wallet changed underneath
        us, and PaymentGatewayError when Paymob cannot be reached.
        """
        course = await self._validate_purchase(user, course_id, payment_method, wallet_number)
        price = quantize_money(course.price)

        final_amount = price
        discount = ZERO
        coupon_id: Optional[str] = None
        if coupon_code:
            evaluation = await self.coupons.validate_coupon(coupon_code, price, user.id)
            if not evaluation.is_valid:
                raise CheckoutValidationError("COUPON_INVALID", evaluation.error or "Invalid coupon code")
            final_amount = evaluation.final_amount
            discount = evaluation.discount
            coupon_id = evaluation.coupon.id if evaluation.coupon else None

        wallet_amount = ZERO
        if use_wallet:
            balance = await self.wallet.get_balance(user.id)
            wallet_amount = quantize_money(max(ZERO, min(balance, final_amount)))

        payment = await self._reserve(
            user, course, final_amount, wallet_amount, discount, coupon_id, payment_method
        )

        if payment.gateway_amount <= 0:
            return await self._settle_without_gateway(payment, course)

        return await self._register_with_gateway(user, payment, course, payment_method, wallet_number)

    async def _validate_purchase(
        self,
        user: AuthenticatedUser,
        course_id: str,
        payment_method: PaymentMethod,
        wallet_number: Optional[str],
    ) -> Course:
        if user.role not in PURCHASE_ROLES:
            raise CheckoutValidationError("FORBIDDEN", NOT_ALLOWED_TO_PAY, status_code=403)

        if payment_method == PaymentMethod.WALLET and not wallet_number:
            raise CheckoutValidationError("VALIDATION_ERROR", WALLET_NUMBER_REQUIRED)

        result = await self.db.execute(
            select(Course).where(Course.id == course_id, Course.is_published.is_(True))
        )
        course = result.scalar_one_or_none()
        if course is None:
            raise CheckoutValidationError("NOT_FOUND", COURSE_NOT_FOUND, status_code=404)

        if not course.price or Decimal(course.price) <= 0:
            raise CheckoutValidationError("FREE_COURSE", FREE_COURSE)

        if await self.enrollments.get_enrollment(user.id, course.id) is not None:
            raise CheckoutValidationError("DUPLICATE_ERROR", ALREADY_ENROLLED, status_code=409)

        if await self.payments.find_pending_for_course(user.id, course.id) is not None:
            raise CheckoutValidationError("PENDING_PAYMENT", PENDING_PAYMENT)

        if course.professor_id == user.id:
            raise CheckoutValidationError("INVALID_PURCHASE", OWN_COURSE)

        return course

    async def _reserve(
        self,
        user: AuthenticatedUser,
        course: Course,
        amount: Decimal,
        wallet_amount: Decimal,
        discount: Decimal,
        coupon_id: Optional[str],
        payment_method: PaymentMethod,
    ) -> Payment:
        """Create the PENDING payment and debit the wallet part in one transaction."""
        try:
            payment = await self.payments.create_pending(
                user_id=user.id,
                course_id=course.id,
                amount=amount,
                payment_method=payment_method,
                wallet_amount=wallet_amount,
                discount_amount=discount,
                coupon_id=coupon_id,
            )
            if wallet_amount > 0:
                await self.wallet.debit(
                    user.id,
                    wallet_amount,
                    related_payment_id=payment.id,
                    tx_type=TransactionType.PURCHASE_DEBIT,
                    description=f"Payment for course: {course.title}",
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return payment

    async def _settle_without_gateway(self, payment: Payment, course: Course) -> Dict[str, Any]:
        """Wallet covered the whole price: complete now, no gateway order."""
        try:
            summary = await PaymentCompletionEffect(self.db, self.enrollments).apply(payment)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if summary.enrollment_created:
            await self.enrollments.invalidate(payment.user_id, course.id)

        logger.info(f"Payment {payment.id} settled from wallet without gateway")
        return self._response(payment, course, "completed")

    async def _register_with_gateway(
        self,
        user: AuthenticatedUser,
        payment: Payment,
        course: Course,
        payment_method: PaymentMethod,
        wallet_number: Optional[str],
    ) -> Dict[str, Any]:
        first_name, last_name = user.split_name()
        billing = {
            "email": user.email,
            "first_name": first_name,
            "last_name": last_name,
            "phone_number": user.phone or wallet_number,
        }

        try:
            initiation = await self.paymob.initiate_payment(
                amount=payment.gateway_amount,
                currency=payment.currency,
                merchant_order_id=payment.merchant_order_id,
                billing=billing,
                payment_method=payment_method,
                wallet_number=wallet_number,
            )
        except PaymentGatewayError as e:
            logger.error(f"Gateway initiation failed for payment {payment.id}: {e.message} ({e.kind.value})")
            await self._fail_after_gateway_error(payment, e)
            raise PaymentGatewayError(
                GATEWAY_FAILED,
                kind=e.kind,
                details={"kind": e.kind.value, "paymentId": payment.id},
            ) from e

        gateway_response = gateway_response_from_initiation(initiation, payment_method)
        try:
            await self.payments.record_gateway_initiation(
                payment,
                gateway_order_id=str(initiation.order_id),
                gateway_response=gateway_response.model_dump(mode="json"),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        response = self._response(payment, course, initiation.type)
        if isinstance(initiation, RedirectInitiation):
            response["redirectUrl"] = initiation.redirect_url
        else:
            response["iframeUrl"] = self.paymob.build_iframe_url(initiation.payment_key)
        return response

    async def _fail_after_gateway_error(self, payment: Payment, error: PaymentGatewayError) -> None:
        try:
            locked = await self.payments.get_by_id(payment.id, for_update=True)
            if locked is not None and locked.is_pending:
                await PaymentFailureEffect(self.db).apply(locked, error.message)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    @staticmethod
    def _response(payment: Payment, course: Course, flow: str) -> Dict[str, Any]:
        return {
            "paymentId": payment.id,
            "type": flow,
            "status": payment.status,
            "paymentMethod": payment.payment_method,
            "merchantOrderId": payment.merchant_order_id,
            "amount": float(payment.amount),
            "walletAmount": float(payment.wallet_amount),
            "discountAmount": float(payment.discount_amount),
            "gatewayAmount": float(payment.gateway_amount),
            "currency": payment.currency,
            "course": {
                "id": course.id,
                "title": course.title,
            },
        }
