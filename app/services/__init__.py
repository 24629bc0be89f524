"""Services package."""

from app.services.cashback import calculate_cashback
from app.services.checkout_service import CheckoutService
from app.services.coupon_service import CouponService, CouponValidationResult, evaluate_coupon
from app.services.enrollment_service import EnrollmentService
from app.services.payment_effects import PaymentCompletionEffect, PaymentFailureEffect
from app.services.payment_service import PaymentService
from app.services.paymob_service import PaymobService
from app.services.reconciliation_service import WebhookReconciler
from app.services.status_service import PaymentStatusService
from app.services.wallet_service import WalletService

__all__ = [
    "calculate_cashback",
    "CheckoutService",
    "CouponService",
    "CouponValidationResult",
    "evaluate_coupon",
    "EnrollmentService",
    "PaymentCompletionEffect",
    "PaymentFailureEffect",
    "PaymentService",
    "PaymobService",
    "WebhookReconciler",
    "PaymentStatusService",
    "WalletService",
]
