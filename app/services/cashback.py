"""Cashback calculation from a course's cashback policy."""

from decimal import Decimal

from app.fsm.states import CashbackType
from app.services.money import ZERO, Number, quantize_money, to_decimal


def calculate_cashback(
    cashback_type: str,
    cashback_value: Number,
    final_price_paid: Number,
) -> Decimal:
    """
    Wallet credit earned for a purchase.

    final_price_paid is the post-discount price, not the list price,
    so coupons never inflate the reward. Free purchases earn nothing.
    """
    paid = to_decimal(final_price_paid)
    value = to_decimal(cashback_value or 0)

    if paid <= 0:
        return ZERO

    if cashback_type == CashbackType.PERCENTAGE.value:
        cashback = paid * value / 100
    elif cashback_type == CashbackType.FIXED.value:
        cashback = value
    else:
        return ZERO

    return max(ZERO, quantize_money(cashback))
