"""
Service-layer exceptions.
Routers translate these into API error responses.
"""

from typing import Any, Optional

from app.fsm.states import PaymentErrorKind


class PaymentError(Exception):
    """Base class for payment domain errors."""

    code = "PAYMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class CheckoutValidationError(PaymentError):
    """Checkout request rejected before any money moved."""

    def __init__(self, code: str, message: str, status_code: int = 400, details: Optional[Any] = None):
        super().__init__(message, details)
        self.code = code
        self.status_code = status_code


class PaymentNotFoundError(PaymentError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class PaymentForbiddenError(PaymentError):
    code = "FORBIDDEN"
    status_code = 403


class InsufficientWalletBalanceError(PaymentError):
    code = "INSUFFICIENT_WALLET_BALANCE"
    status_code = 400


class WalletOperationError(PaymentError):
    code = "VALIDATION_ERROR"
    status_code = 400


class PaymentGatewayError(PaymentError):
    """Gateway call failed. Always safe for the client to retry."""

    code = "PAYMENT_GATEWAY_ERROR"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        kind: PaymentErrorKind = PaymentErrorKind.UNKNOWN,
        details: Optional[Any] = None,
    ):
        super().__init__(message, details)
        self.kind = kind
