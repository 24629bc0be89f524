"""
Tests for coupon evaluation and usage accounting.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from app.fsm.states import CouponType, PaymentStatus
from app.models.coupon import Coupon
from app.services.coupon_service import (
    ALREADY_USED,
    EXPIRED,
    INVALID_CODE,
    NOT_YET_VALID,
    USAGE_LIMIT_EXCEEDED,
    VALIDATION_FAILED,
    CouponService,
    evaluate_coupon,
)
from conftest import create_coupon, create_course, create_payment

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_coupon(**overrides) -> Coupon:
    fields = dict(
        code="save20",
        type=CouponType.PERCENTAGE.value,
        amount=Decimal("20"),
        max_uses=None,
        used_count=0,
        max_uses_per_user=1,
        start_date=NOW - timedelta(days=1),
        end_date=None,
        is_active=True,
    )
    fields.update(overrides)
    return Coupon(**fields)


class TestEvaluateCoupon:
    """Pure rule evaluation."""

    def test_percentage_discount(self):
        result = evaluate_coupon(make_coupon(), Decimal("250.00"), now=NOW)

        assert result.is_valid
        assert result.discount == Decimal("50.00")
        assert result.final_amount == Decimal("200.00")
        assert result.discount_type == CouponType.PERCENTAGE.value

    def test_fixed_discount_capped_at_price(self):
        coupon = make_coupon(type=CouponType.FIXED.value, amount=Decimal("150"))
        result = evaluate_coupon(coupon, Decimal("100"), now=NOW)

        assert result.is_valid
        assert result.discount == Decimal("100.00")
        assert result.final_amount == Decimal("0.00")

    def test_percentage_rounds_half_up(self):
        coupon = make_coupon(amount=Decimal("15"))
        result = evaluate_coupon(coupon, Decimal("99.99"), now=NOW)

        # 14.9985 -> 15.00
        assert result.discount == Decimal("15.00")
        assert result.final_amount == Decimal("84.99")

    def test_missing_coupon(self):
        result = evaluate_coupon(None, Decimal("100"), now=NOW)

        assert not result.is_valid
        assert result.error == INVALID_CODE
        assert result.discount == Decimal("0")
        assert result.final_amount == Decimal("100.00")

    def test_inactive_coupon(self):
        result = evaluate_coupon(make_coupon(is_active=False), Decimal("100"), now=NOW)
        assert result.error == INVALID_CODE

    def test_expired_coupon(self):
        coupon = make_coupon(end_date=NOW - timedelta(seconds=1))
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).error == EXPIRED

    def test_ends_one_second_from_now_is_valid(self):
        coupon = make_coupon(end_date=NOW + timedelta(seconds=1))
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).is_valid

    def test_ending_exactly_now_is_valid(self):
        coupon = make_coupon(end_date=NOW)
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).is_valid

    def test_not_yet_valid(self):
        coupon = make_coupon(start_date=NOW + timedelta(hours=1))
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).error == NOT_YET_VALID

    def test_global_cap(self):
        coupon = make_coupon(max_uses=5, used_count=5)
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).error == USAGE_LIMIT_EXCEEDED

    def test_per_user_cap(self):
        result = evaluate_coupon(make_coupon(), Decimal("100"), prior_completed_usage=1, now=NOW)
        assert result.error == ALREADY_USED

    def test_per_user_cap_zero_means_unlimited(self):
        coupon = make_coupon(max_uses_per_user=0)
        result = evaluate_coupon(coupon, Decimal("100"), prior_completed_usage=10, now=NOW)
        assert result.is_valid

    def test_rules_short_circuit_in_order(self):
        # Expired and over cap: expiry is reported first
        coupon = make_coupon(end_date=NOW - timedelta(days=1), max_uses=1, used_count=1)
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).error == EXPIRED

    def test_naive_dates_treated_as_utc(self):
        coupon = make_coupon(start_date=datetime(2024, 6, 1, 11, 0), end_date=datetime(2024, 6, 1, 13, 0))
        assert evaluate_coupon(coupon, Decimal("100"), now=NOW).is_valid

    def test_to_dict(self):
        data = evaluate_coupon(make_coupon(), Decimal("100"), now=NOW).to_dict()

        assert data["isValid"] is True
        assert data["discount"] == 20.0
        assert data["finalAmount"] == 80.0
        assert data["coupon"]["code"] == "SAVE20"
        assert "error" not in data


def test_code_is_normalized():
    coupon = Coupon(code="  welcome10 ")
    assert coupon.code == "WELCOME10"


@pytest.mark.asyncio
async def test_validate_coupon_by_code(db):
    await create_coupon(db, code="SAVE20")
    service = CouponService(db)

    result = await service.validate_coupon("save20", Decimal("100"), user_id="student-1")

    assert result.is_valid
    assert result.final_amount == Decimal("80.00")


@pytest.mark.asyncio
async def test_validate_coupon_counts_completed_usage_only(db):
    await create_course(db)
    coupon = await create_coupon(db, code="ONCE")
    await create_payment(db, merchant_order_id="o-1", gateway_order_id="1", coupon_id=coupon.id)
    await create_payment(
        db,
        merchant_order_id="o-2",
        gateway_order_id="2",
        coupon_id=coupon.id,
        status=PaymentStatus.FAILED,
    )
    service = CouponService(db)

    # PENDING and FAILED payments do not count
    result = await service.validate_coupon("ONCE", Decimal("100"), user_id="student-1")
    assert result.is_valid

    await create_payment(
        db,
        merchant_order_id="o-3",
        gateway_order_id="3",
        coupon_id=coupon.id,
        status=PaymentStatus.COMPLETED,
    )
    result = await service.validate_coupon("ONCE", Decimal("100"), user_id="student-1")
    assert result.error == ALREADY_USED

    # Another user is unaffected
    result = await service.validate_coupon("ONCE", Decimal("100"), user_id="student-2")
    assert result.is_valid


@pytest.mark.asyncio
async def test_validate_unknown_code(db):
    result = await CouponService(db).validate_coupon("NOPE", Decimal("100"))
    assert result.error == INVALID_CODE


@pytest.mark.asyncio
async def test_validate_coupon_lookup_error_is_data(db):
    service = CouponService(db)
    service.get_by_code = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))

    result = await service.validate_coupon("SAVE20", Decimal("100"))

    assert not result.is_valid
    assert result.error == VALIDATION_FAILED
    assert result.final_amount == Decimal("100.00")


@pytest.mark.asyncio
async def test_apply_coupon_increments_once(db):
    coupon = await create_coupon(db, max_uses=2, used_count=0)
    service = CouponService(db)

    assert await service.apply_coupon(coupon.id) is True
    await db.commit()
    await db.refresh(coupon)

    assert coupon.used_count == 1


@pytest.mark.asyncio
async def test_apply_coupon_respects_cap(db):
    coupon = await create_coupon(db, max_uses=1, used_count=1)
    service = CouponService(db)

    assert await service.apply_coupon(coupon.id) is False
    await db.commit()
    await db.refresh(coupon)

    assert coupon.used_count == 1
