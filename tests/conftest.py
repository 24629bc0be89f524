"""
Pytest configuration and fixtures.
"""

import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

# Settings are read at import time
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_PROXY_KEY", "test-proxy-key")
os.environ.setdefault("PAYMOB_API_KEY", "test-api-key")
os.environ.setdefault("PAYMOB_HMAC_SECRET", "test-hmac-secret")
os.environ.setdefault("PAYMOB_INTEGRATION_ID_CARD", "1001")
os.environ.setdefault("PAYMOB_INTEGRATION_ID_WALLET", "1002")
os.environ.setdefault("PAYMOB_IFRAME_ID", "777")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add app to path
sys.path.append(os.getcwd())

import app.models  # noqa: F401
from app.cache import InMemoryCache
from app.database import Base
from app.fsm.states import CashbackType, CouponType, PaymentMethod, PaymentStatus, UserRole
from app.models.coupon import Coupon
from app.models.course import Course
from app.models.payment import Payment
from app.services.identity import AuthenticatedUser
from app.services.money import utcnow

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

HMAC_SECRET = os.environ["PAYMOB_HMAC_SECRET"]
PROXY_KEY = os.environ["SESSION_PROXY_KEY"]


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def student() -> AuthenticatedUser:
    return AuthenticatedUser(
        id="student-1",
        role=UserRole.STUDENT,
        email="student@example.com",
        name="Sara Adel",
        phone="01000000000",
    )


@pytest.fixture
def other_student() -> AuthenticatedUser:
    return AuthenticatedUser(id="student-2", role=UserRole.STUDENT)


@pytest.fixture
def admin() -> AuthenticatedUser:
    return AuthenticatedUser(id="admin-1", role=UserRole.ADMIN)


# --- Factories (rows are committed so rollbacks in code under test keep them) ---

async def create_course(
    db: AsyncSession,
    course_id: str = "course-1",
    price: str = "100.00",
    is_published: bool = True,
    professor_id: Optional[str] = "prof-1",
    cashback_type: CashbackType = CashbackType.NONE,
    cashback_value: str = "0",
    title: str = "Python Basics",
) -> Course:
    course = Course(
        id=course_id,
        title=title,
        price=Decimal(price),
        professor_id=professor_id,
        is_published=is_published,
        cashback_type=cashback_type.value,
        cashback_value=Decimal(cashback_value),
    )
    db.add(course)
    await db.commit()
    return course


async def create_coupon(
    db: AsyncSession,
    code: str = "SAVE20",
    coupon_type: CouponType = CouponType.PERCENTAGE,
    amount: str = "20",
    max_uses: Optional[int] = None,
    used_count: int = 0,
    max_uses_per_user: int = 1,
    start_date=None,
    end_date=None,
    is_active: bool = True,
) -> Coupon:
    coupon = Coupon(
        code=code,
        type=coupon_type.value,
        amount=Decimal(amount),
        max_uses=max_uses,
        used_count=used_count,
        max_uses_per_user=max_uses_per_user,
        start_date=start_date or datetime(2020, 1, 1, tzinfo=timezone.utc),
        end_date=end_date,
        is_active=is_active,
    )
    db.add(coupon)
    await db.commit()
    return coupon


async def create_payment(
    db: AsyncSession,
    user_id: str = "student-1",
    course_id: Optional[str] = "course-1",
    amount: str = "100.00",
    wallet_amount: str = "0",
    status: PaymentStatus = PaymentStatus.PENDING,
    merchant_order_id: str = "order-1",
    gateway_order_id: Optional[str] = "5001",
    gateway_transaction_id: Optional[int] = None,
    coupon_id: Optional[str] = None,
    created_at=None,
    failure_message: Optional[str] = None,
    gateway_response: Optional[dict] = None,
) -> Payment:
    payment = Payment(
        user_id=user_id,
        course_id=course_id,
        amount=Decimal(amount),
        wallet_amount=Decimal(wallet_amount),
        currency="EGP",
        status=status.value,
        payment_method=PaymentMethod.CARD.value,
        merchant_order_id=merchant_order_id,
        gateway_order_id=gateway_order_id,
        gateway_transaction_id=gateway_transaction_id,
        coupon_id=coupon_id,
        created_at=created_at or utcnow(),
        failure_message=failure_message,
        gateway_response=gateway_response,
    )
    db.add(payment)
    await db.commit()
    return payment


def paymob_transaction(
    order_id: int = 5001,
    transaction_id: int = 900000001,
    success: bool = True,
    amount_cents: int = 10000,
    merchant_order_id: Optional[str] = None,
    message: Optional[str] = None,
) -> dict:
    """A Paymob TRANSACTION obj with the fields the HMAC covers."""
    return {
        "id": transaction_id,
        "pending": False,
        "amount_cents": amount_cents,
        "success": success,
        "is_auth": False,
        "is_capture": False,
        "is_standalone_payment": True,
        "is_voided": False,
        "is_refunded": False,
        "is_3d_secure": True,
        "integration_id": 1001,
        "has_parent_transaction": False,
        "order": {"id": order_id, "merchant_order_id": merchant_order_id},
        "created_at": "2024-05-01T10:00:00.000000",
        "currency": "EGP",
        "source_data": {"pan": "2346", "type": "card", "sub_type": "MasterCard"},
        "error_occured": False,
        "owner": 302,
        "data": {"message": message or ("Approved" if success else "Do not honor")},
    }
