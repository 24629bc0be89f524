"""
Wallet Endpoints.
Balance and ledger history for the caller, plus operator adjustments.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, require_admin
from app.api.responses import ApiError, ApiErrors, success_response
from app.database import get_db
from app.fsm.states import TransactionType
from app.models.wallet import WalletTransaction
from app.services.identity import AuthenticatedUser
from app.services.money import as_utc
from app.services.wallet_service import WalletService

router = APIRouter()
admin_router = APIRouter()
logger = logging.getLogger(__name__)


class AdjustBalanceRequest(BaseModel):
    """Positive amount credits the user, negative debits."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    amount: Decimal
    reason: str = Field(min_length=1, max_length=255)


def serialize_transaction(entry: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "amount": float(entry.amount),
        "type": entry.type,
        "description": entry.description,
        "relatedPaymentId": entry.related_payment_id,
        "createdAt": as_utc(entry.created_at).isoformat(),
    }


@router.get("/balance")
async def get_wallet_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    balance = await WalletService(db).get_balance(user.id)
    return success_response({"balance": float(balance)})


@router.get("/transactions")
async def get_wallet_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    tx_type: Optional[TransactionType] = Query(None, alias="type"),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    history = await WalletService(db).get_transaction_history(user.id, page=page, limit=limit, tx_type=tx_type)
    return success_response({
        "transactions": [serialize_transaction(t) for t in history["transactions"]],
        "pagination": history["pagination"],
    })


@admin_router.post("/wallet/adjust")
async def adjust_wallet_balance(
    request: AdjustBalanceRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Manual credit or debit by an operator, recorded with the admin id."""
    if request.amount == 0:
        raise ApiError.from_code(ApiErrors.VALIDATION_ERROR, "المبلغ يجب ألا يساوي صفر")

    service = WalletService(db)
    entry = await service.admin_adjust_balance(
        request.user_id,
        request.amount,
        reason=request.reason,
        admin_id=admin.id,
    )
    balance = await service.get_balance(request.user_id)

    logger.info(f"Admin {admin.id} adjusted wallet of {request.user_id} by {request.amount}")
    return success_response(
        {"transaction": serialize_transaction(entry), "balance": float(balance)},
        "Wallet balance adjusted",
    )
