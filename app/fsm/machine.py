"""
Payment state machine with strict transitions.
"""

import logging
from typing import Dict, FrozenSet

from app.fsm.states import PaymentStatus

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a payment is moved along an edge that is not declared."""

    def __init__(self, current: PaymentStatus, target: PaymentStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition payment from {current.value} to {target.value}")


class PaymentStateMachine:
    """
    Declares every allowed payment status edge.

    PENDING resolves exactly once, to COMPLETED or FAILED.
    REFUNDED is only reachable from COMPLETED by an operator.
    """

    TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
        PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
        PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
        PaymentStatus.FAILED: frozenset(),
        PaymentStatus.REFUNDED: frozenset(),
    }

    TERMINAL: FrozenSet[PaymentStatus] = frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
    )

    @classmethod
    def is_terminal(cls, status: PaymentStatus) -> bool:
        return PaymentStatus(status) in cls.TERMINAL

    @classmethod
    def can_transition(cls, current: PaymentStatus, target: PaymentStatus) -> bool:
        return PaymentStatus(target) in cls.TRANSITIONS[PaymentStatus(current)]

    @classmethod
    def ensure_transition(cls, current: PaymentStatus, target: PaymentStatus) -> None:
        """Raise InvalidTransitionError unless current -> target is declared."""
        current = PaymentStatus(current)
        target = PaymentStatus(target)
        if not cls.can_transition(current, target):
            logger.error(f"Rejected payment transition {current.value} -> {target.value}")
            raise InvalidTransitionError(current, target)
