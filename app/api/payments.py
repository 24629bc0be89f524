"""
Payment Endpoints.
Checkout initiation, return-flow status checks, the embedded payment page
and coupon previews.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_cache, get_current_user, get_paymob_service
from app.api.responses import ApiError, ApiErrors, success_response
from app.cache import Cache
from app.database import get_db
from app.fsm.states import PaymentMethod
from app.models.course import Course
from app.services.checkout_service import COURSE_NOT_FOUND, CheckoutService
from app.services.coupon_service import CouponService
from app.services.enrollment_service import EnrollmentService
from app.services.identity import AuthenticatedUser
from app.services.payment_service import PaymentService
from app.services.paymob_service import IframeGatewayResponse, PaymobService, parse_gateway_response
from app.services.status_service import PaymentStatusService

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter()
logger = logging.getLogger(__name__)


class InitiatePaymentRequest(BaseModel):
    """Request body for starting a course checkout."""
    model_config = ConfigDict(populate_by_name=True)

    course_id: str = Field(alias="courseId", min_length=1)
    payment_method: PaymentMethod = Field(default=PaymentMethod.CARD, alias="paymentMethod")
    wallet_number: Optional[str] = Field(default=None, alias="walletNumber")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")
    use_wallet: bool = Field(default=False, alias="useWallet")


class ValidateCouponRequest(BaseModel):
    """Request body for a coupon preview."""
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    course_id: str = Field(alias="courseId", min_length=1)


@router.post("/initiate")
async def initiate_payment(
    request: InitiatePaymentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
    paymob: PaymobService = Depends(get_paymob_service),
):
    """
    Start a checkout for a published paid course.

    Returns an iframe URL (card) or redirect URL (mobile wallet). When the
    wallet covers the full price the payment completes immediately.
    """
    service = CheckoutService(db, paymob, EnrollmentService(db, cache))
    data = await service.initiate_course_checkout(
        user,
        course_id=request.course_id,
        payment_method=request.payment_method,
        wallet_number=request.wallet_number,
        coupon_code=request.coupon_code,
        use_wallet=request.use_wallet,
    )
    logger.info(f"Checkout initiated: payment {data['paymentId']} ({data['type']}) for user {user.id}")
    return success_response(data, "Payment initiated successfully", status_code=201)


@router.get("/check-status")
async def check_payment_status(
    course_id: Optional[str] = Query(None, alias="courseId"),
    merchant_order_id: Optional[str] = Query(None, alias="merchantOrderId"),
    transaction_id: Optional[str] = Query(None, alias="transactionId"),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Resolve the latest payment for the gateway return page.

    A PENDING payment younger than the polling window carries
    _metadata.shouldPoll so the client retries instead of showing failure.
    """
    service = PaymentStatusService(db)
    data = await service.check_status(
        user.id,
        course_id=course_id,
        merchant_order_id=merchant_order_id,
        transaction_id=transaction_id,
    )
    return success_response(data)


@router.get("/iframe/{payment_id}", response_class=HTMLResponse)
async def payment_iframe(
    request: Request,
    payment_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    paymob: PaymobService = Depends(get_paymob_service),
):
    """Serve the page embedding Paymob's hosted card form."""
    payment = await PaymentService(db).get_by_id(payment_id)

    if payment is None:
        raise ApiError.from_code(ApiErrors.NOT_FOUND, "عملية الدفع غير موجودة")

    if payment.user_id != user.id:
        raise ApiError.from_code(ApiErrors.FORBIDDEN, "لا يمكنك الوصول إلى هذه العملية")

    if not payment.is_pending:
        raise ApiError("PAYMENT_NOT_PENDING", "عملية الدفع لم تعد صالحة", 400)

    gateway_response = parse_gateway_response(payment.gateway_response)
    if not isinstance(gateway_response, IframeGatewayResponse) or not gateway_response.payment_key:
        raise ApiError("PAYMENT_KEY_NOT_FOUND", "مفتاح الدفع غير متوفر في قاعدة البيانات", 400)

    iframe_url = paymob.build_iframe_url(gateway_response.payment_key)
    if not iframe_url:
        logger.error("PAYMOB_IFRAME_ID not configured")
        raise ApiError("IFRAME_CONFIG_ERROR", "إعدادات الدفع غير مكتملة", 500)

    course = await db.get(Course, payment.course_id) if payment.course_id else None

    return templates.TemplateResponse(
        request,
        "payment_iframe.html",
        {
            "iframe_url": iframe_url,
            "payment_id": payment.id,
            "course_title": course.title if course else None,
        },
    )


@router.post("/coupons/validate")
async def validate_coupon(
    request: ValidateCouponRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Preview a coupon against a course price. Invalid coupons are reported in data."""
    result = await db.execute(
        select(Course).where(Course.id == request.course_id, Course.is_published.is_(True))
    )
    course = result.scalar_one_or_none()
    if course is None:
        raise ApiError.from_code(ApiErrors.NOT_FOUND, COURSE_NOT_FOUND)

    evaluation = await CouponService(db).validate_coupon(request.code, course.price, user.id)
    return success_response(evaluation.to_dict())
