"""
Wallet Service - append-only ledger with derived balances.

The balance is always sum(amount) over a user's transactions. Nothing here
commits; callers own the transaction so a debit can share it with the
payment row it funds.
"""

import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.fsm.states import TransactionType
from app.models.wallet import WalletTransaction
from app.services.errors import InsufficientWalletBalanceError, WalletOperationError
from app.services.money import Number, quantize_money

logger = logging.getLogger(__name__)


def wallet_lock_key(user_id: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(user_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class WalletService:
    """Service for wallet credits, debits and history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _lock_wallet(self, user_id: str) -> None:
        """
        Serialize balance-affecting writes for one user until the
        surrounding transaction ends. SQLite already serializes writers.
        """
        if self.db.get_bind().dialect.name != "postgresql":
            return
        await self.db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": wallet_lock_key(user_id)},
        )

    async def get_balance(self, user_id: str) -> Decimal:
        """Derived balance: the sum of every ledger entry for the user."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.user_id == user_id
            )
        )
        return quantize_money(result.scalar_one())

    async def _append(
        self,
        user_id: str,
        amount: Decimal,
        tx_type: TransactionType,
        description: Optional[str],
        related_payment_id: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> WalletTransaction:
        entry = WalletTransaction(
            user_id=user_id,
            amount=amount,
            type=tx_type.value,
            description=description,
            related_payment_id=related_payment_id,
            admin_id=admin_id,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def credit(
        self,
        user_id: str,
        amount: Number,
        related_payment_id: Optional[str] = None,
        tx_type: TransactionType = TransactionType.ADMIN_CREDIT,
        description: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> WalletTransaction:
        """Append a positive entry."""
        value = quantize_money(amount)
        if value <= 0:
            raise WalletOperationError("Credit amount must be positive")
        if not tx_type.is_credit:
            raise WalletOperationError(f"{tx_type.value} is not a credit type")

        entry = await self._append(user_id, value, tx_type, description, related_payment_id, admin_id)
        logger.info(f"Wallet credit {value} ({tx_type.value}) for user {user_id}")
        return entry

    async def debit(
        self,
        user_id: str,
        amount: Number,
        related_payment_id: Optional[str] = None,
        tx_type: TransactionType = TransactionType.PURCHASE_DEBIT,
        description: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Append a negative entry if the current derived balance covers it.

        The balance is re-read after taking the wallet lock, inside the
        caller's transaction, so two concurrent checkouts cannot both spend
        the same funds.
        """
        value = quantize_money(amount)
        if value <= 0:
            raise WalletOperationError("Debit amount must be positive")
        if tx_type.is_credit:
            raise WalletOperationError(f"{tx_type.value} is not a debit type")

        await self._lock_wallet(user_id)
        balance = await self.get_balance(user_id)

        if balance < value:
            logger.warning(f"Wallet debit of {value} rejected for user {user_id}: balance {balance}")
            raise InsufficientWalletBalanceError(
                f"رصيد المحفظة غير كافٍ. المتاح: {balance}، المطلوب: {value}",
                details={"available": float(balance), "required": float(value)},
            )

        entry = await self._append(user_id, -value, tx_type, description, related_payment_id, admin_id)
        logger.info(f"Wallet debit {value} ({tx_type.value}) for user {user_id}")
        return entry

    async def _find_for_payment(
        self,
        payment_id: str,
        tx_type: TransactionType,
    ) -> Optional[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(
                WalletTransaction.related_payment_id == payment_id,
                WalletTransaction.type == tx_type.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def credit_cashback(
        self,
        user_id: str,
        amount: Number,
        payment_id: str,
        course_title: Optional[str] = None,
    ) -> Optional[WalletTransaction]:
        """
        Credit cashback for a completed payment, at most once per payment.
        Returns None when nothing was credited.
        """
        value = quantize_money(amount)
        if value <= 0:
            return None

        if await self._find_for_payment(payment_id, TransactionType.CASHBACK_CREDIT):
            logger.info(f"Cashback already credited for payment {payment_id}")
            return None

        return await self.credit(
            user_id,
            value,
            related_payment_id=payment_id,
            tx_type=TransactionType.CASHBACK_CREDIT,
            description=f"Cashback earned from course: {course_title or '-'}",
        )

    async def refund_payment(
        self,
        user_id: str,
        amount: Number,
        payment_id: str,
        course_title: Optional[str] = None,
    ) -> Optional[WalletTransaction]:
        """Return wallet funds debited for a payment that did not complete."""
        value = quantize_money(amount)
        if value <= 0:
            return None

        if await self._find_for_payment(payment_id, TransactionType.REFUND_CREDIT):
            logger.info(f"Wallet refund already recorded for payment {payment_id}")
            return None

        return await self.credit(
            user_id,
            value,
            related_payment_id=payment_id,
            tx_type=TransactionType.REFUND_CREDIT,
            description=f"Refund for failed payment: {course_title or '-'}",
        )

    async def admin_adjust_balance(
        self,
        user_id: str,
        amount: Number,
        reason: str,
        admin_id: str,
    ) -> WalletTransaction:
        """Operator credit (positive amount) or debit (negative amount)."""
        value = quantize_money(amount)
        if value == 0:
            raise WalletOperationError("Adjustment amount cannot be zero")

        if value > 0:
            return await self.credit(
                user_id,
                value,
                tx_type=TransactionType.ADMIN_CREDIT,
                description=reason,
                admin_id=admin_id,
            )

        return await self.debit(
            user_id,
            -value,
            tx_type=TransactionType.ADMIN_DEBIT,
            description=reason,
            admin_id=admin_id,
        )

    async def get_transaction_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        tx_type: Optional[TransactionType] = None,
    ) -> Dict[str, Any]:
        """Paginated ledger, newest first."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        conditions = [WalletTransaction.user_id == user_id]
        if tx_type is not None:
            conditions.append(WalletTransaction.type == tx_type.value)

        total_result = await self.db.execute(
            select(func.count(WalletTransaction.id)).where(*conditions)
        )
        total = int(total_result.scalar_one())

        result = await self.db.execute(
            select(WalletTransaction)
            .where(*conditions)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        transactions: List[WalletTransaction] = list(result.scalars().all())

        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }


