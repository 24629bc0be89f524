"""FSM package for payment state management."""

from app.fsm.states import PaymentStatus, PaymentMethod, CouponType, CashbackType, TransactionType
from app.fsm.machine import PaymentStateMachine, InvalidTransitionError

__all__ = [
    "PaymentStatus",
    "PaymentMethod",
    "CouponType",
    "CashbackType",
    "TransactionType",
    "PaymentStateMachine",
    "InvalidTransitionError",
]
