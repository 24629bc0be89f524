"""
State and type enums for payments, coupons, enrollments and the wallet ledger.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    """
    Lifecycle of a checkout attempt.
    PENDING is the only non-terminal state reachable by reconciliation.
    """

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    """How the gateway portion is paid."""

    CARD = "card"
    WALLET = "wallet"  # Mobile wallet via Paymob redirect


class CouponType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class CashbackType(str, Enum):
    NONE = "NONE"
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"


class TransactionType(str, Enum):
    """Wallet ledger entry kinds. Credits are positive, debits negative."""

    CASHBACK_CREDIT = "CASHBACK_CREDIT"
    PURCHASE_DEBIT = "PURCHASE_DEBIT"
    REFUND_CREDIT = "REFUND_CREDIT"
    ADMIN_CREDIT = "ADMIN_CREDIT"
    ADMIN_DEBIT = "ADMIN_DEBIT"

    @property
    def is_credit(self) -> bool:
        return self in (
            TransactionType.CASHBACK_CREDIT,
            TransactionType.REFUND_CREDIT,
            TransactionType.ADMIN_CREDIT,
        )


class UserRole(str, Enum):
    STUDENT = "STUDENT"
    PROFESSOR = "PROFESSOR"
    ADMIN = "ADMIN"


class PaymentErrorKind(str, Enum):
    """
    Advisory failure classification for the client recovery UI.
    Not an authoritative gateway code.
    """

    NETWORK = "network"
    CARD_DECLINED = "card_declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"
