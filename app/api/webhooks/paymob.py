"""
Paymob Webhook Handler.
Verifies the transaction HMAC and reconciles the payment it refers to.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_cache, get_paymob_service
from app.api.responses import ApiErrors, error_response
from app.cache import Cache
from app.database import get_db
from app.services.enrollment_service import EnrollmentService
from app.services.paymob_service import PaymobService
from app.services.reconciliation_service import ReconciliationOutcome, WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/paymob")
async def paymob_webhook(
    request: Request,
    hmac_param: Optional[str] = Query(None, alias="hmac"),
    db: AsyncSession = Depends(get_db),
    cache: Cache = Depends(get_cache),
    paymob: PaymobService = Depends(get_paymob_service),
):
    """
    Handle Paymob transaction callbacks.

    200: processed, ignored or already processed (gateway stops retrying)
    400: malformed payload
    401: bad signature
    404: unknown order
    500: processing error (gateway retries)
    """
    signature = request.headers.get("x-paymob-hmac") or hmac_param

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Paymob webhook with non-JSON body")
        return error_response(
            ApiErrors.VALIDATION_ERROR.code,
            "Invalid webhook payload",
            ApiErrors.VALIDATION_ERROR.status,
        )

    reconciler = WebhookReconciler(db, paymob, EnrollmentService(db, cache))

    try:
        result = await reconciler.reconcile(payload, signature)
    except Exception as e:
        logger.error(f"Error processing Paymob webhook: {e}", exc_info=True)
        return error_response(
            ApiErrors.INTERNAL_ERROR.code,
            "Webhook processing failed",
            ApiErrors.INTERNAL_ERROR.status,
        )

    if result.outcome == ReconciliationOutcome.UNAUTHORIZED:
        return error_response(ApiErrors.UNAUTHORIZED.code, "Invalid signature", ApiErrors.UNAUTHORIZED.status)
    if result.outcome == ReconciliationOutcome.NOT_FOUND:
        return error_response("PAYMENT_NOT_FOUND", "Payment not found", 404)
    if result.outcome == ReconciliationOutcome.INVALID_PAYLOAD:
        return error_response(
            ApiErrors.VALIDATION_ERROR.code,
            "Invalid webhook payload",
            ApiErrors.VALIDATION_ERROR.status,
        )

    logger.info(f"Paymob webhook {result.outcome.value} for payment {result.payment_id}")
    return {
        "received": True,
        "outcome": result.outcome.value,
        "paymentId": result.payment_id,
        "status": result.status,
    }


@router.get("/paymob")
async def paymob_webhook_liveness():
    """Liveness check for the webhook URL."""
    return {"status": "ok", "message": "Paymob webhook endpoint is active"}
