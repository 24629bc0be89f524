"""
Tests for the HTTP layer: webhook status codes, auth, envelopes.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from app.api.deps import get_cache, get_paymob_service
from app.database import get_db
from app.fsm.states import PaymentErrorKind, PaymentStatus
from app.main import app
from app.models.enrollment import Enrollment
from app.services.errors import PaymentGatewayError
from app.services.paymob_service import IframeInitiation, PaymobService, compute_hmac
from app.services.wallet_service import WalletService
from conftest import HMAC_SECRET, PROXY_KEY, create_course, create_payment, paymob_transaction

STUDENT_HEADERS = {
    "X-Session-Key": PROXY_KEY,
    "X-User-Id": "student-1",
    "X-User-Role": "STUDENT",
    "X-User-Name": "Sara Adel",
}
ADMIN_HEADERS = {"X-Session-Key": PROXY_KEY, "X-User-Id": "admin-1", "X-User-Role": "ADMIN"}


@pytest.fixture
def paymob() -> PaymobService:
    service = PaymobService(hmac_secret=HMAC_SECRET, iframe_id="777", base_url="https://accept.paymob.com/api")
    service.initiate_payment = AsyncMock(return_value=IframeInitiation(order_id=5001, payment_key="pk_live"))
    return service


@pytest_asyncio.fixture
async def client(db, paymob, cache):
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_paymob_service] = lambda: paymob
    app.dependency_overrides[get_cache] = lambda: cache

    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def webhook_body(**kwargs):
    transaction = paymob_transaction(**kwargs)
    return {"type": "TRANSACTION", "obj": transaction}, compute_hmac(transaction, HMAC_SECRET)


# --- Webhook ---

@pytest.mark.asyncio
async def test_webhook_success(client, db):
    await create_course(db)
    payment = await create_payment(db)
    body, signature = webhook_body()

    response = await client.post("/webhooks/paymob", json=body, params={"hmac": signature})

    assert response.status_code == 200
    data = response.json()
    assert data["received"] is True
    assert data["status"] == PaymentStatus.COMPLETED.value

    await db.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_webhook_signature_from_header(client, db):
    await create_course(db)
    await create_payment(db)
    body, signature = webhook_body()

    response = await client.post("/webhooks/paymob", json=body, headers={"x-paymob-hmac": signature})

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_webhook_replay_returns_200(client, db):
    await create_course(db)
    await create_payment(db)
    body, signature = webhook_body()

    await client.post("/webhooks/paymob", json=body, params={"hmac": signature})
    response = await client.post("/webhooks/paymob", json=body, params={"hmac": signature})

    assert response.status_code == 200
    assert response.json()["outcome"] == "already_processed"


@pytest.mark.asyncio
async def test_webhook_bad_signature_401(client, db):
    await create_course(db)
    await create_payment(db)
    body, _ = webhook_body()

    response = await client.post("/webhooks/paymob", json=body, params={"hmac": "deadbeef"})

    assert response.status_code == 401
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_webhook_unknown_order_404(client):
    body, signature = webhook_body(order_id=999)
    response = await client.post("/webhooks/paymob", json=body, params={"hmac": signature})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_webhook_invalid_json_400(client):
    response = await client.post(
        "/webhooks/paymob",
        content=b"not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_non_transaction_ignored(client):
    response = await client.post("/webhooks/paymob", json={"type": "TOKEN", "obj": {}})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_webhook_processing_error_500(client, db, monkeypatch):
    await create_course(db)
    await create_payment(db)
    body, signature = webhook_body()

    monkeypatch.setattr(
        "app.services.payment_effects.PaymentCompletionEffect.apply",
        AsyncMock(side_effect=RuntimeError("boom")),
    )
    response = await client.post("/webhooks/paymob", json=body, params={"hmac": signature})

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"


@pytest.mark.asyncio
async def test_webhook_liveness(client):
    response = await client.get("/webhooks/paymob")
    assert response.status_code == 200


# --- Auth ---

@pytest.mark.asyncio
async def test_missing_proxy_key_401(client):
    response = await client.get("/api/wallet/balance", headers={"X-User-Id": "student-1", "X-User-Role": "STUDENT"})

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_unknown_role_401(client):
    headers = {**STUDENT_HEADERS, "X-User-Role": "GUEST"}
    response = await client.get("/api/wallet/balance", headers=headers)
    assert response.status_code == 401


# --- Payments ---

@pytest.mark.asyncio
async def test_initiate_201(client, db):
    await create_course(db)

    response = await client.post(
        "/api/payments/initiate",
        json={"courseId": "course-1", "paymentMethod": "card"},
        headers=STUDENT_HEADERS,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["iframeUrl"].endswith("/iframes/777?payment_token=pk_live")


@pytest.mark.asyncio
async def test_initiate_validation_error(client):
    response = await client.post("/api/payments/initiate", json={"paymentMethod": "cash"}, headers=STUDENT_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_initiate_gateway_error_502(client, db, paymob):
    await create_course(db)
    paymob.initiate_payment.side_effect = PaymentGatewayError("timed out", kind=PaymentErrorKind.TIMEOUT)

    response = await client.post("/api/payments/initiate", json={"courseId": "course-1"}, headers=STUDENT_HEADERS)

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "PAYMENT_GATEWAY_ERROR"
    assert error["details"]["kind"] == "timeout"
    assert error["details"]["retryable"] is True


@pytest.mark.asyncio
async def test_initiate_free_course(client, db):
    await create_course(db, price="0")

    response = await client.post("/api/payments/initiate", json={"courseId": "course-1"}, headers=STUDENT_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "FREE_COURSE"


@pytest.mark.asyncio
async def test_check_status(client, db):
    await create_course(db)
    await create_payment(db)

    response = await client.get(
        "/api/payments/check-status",
        params={"courseId": "course-1"},
        headers=STUDENT_HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert data["_metadata"]["shouldPoll"] is True


@pytest.mark.asyncio
async def test_check_status_requires_identifier(client):
    response = await client.get("/api/payments/check-status", headers=STUDENT_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_check_status_forbidden(client, db):
    await create_course(db)
    await create_payment(db, user_id="student-2", merchant_order_id="theirs")

    response = await client.get(
        "/api/payments/check-status",
        params={"merchantOrderId": "theirs"},
        headers=STUDENT_HEADERS,
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_check_status_not_found(client):
    response = await client.get(
        "/api/payments/check-status",
        params={"transactionId": "123"},
        headers=STUDENT_HEADERS,
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "PAYMENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_iframe_page(client, db):
    await create_course(db)
    payment = await create_payment(
        db,
        gateway_response={"kind": "iframe", "payment_method": "card", "initiated_at": "2024-05-01T10:00:00Z", "payment_key": "pk_live"},
    )

    response = await client.get(f"/api/payments/iframe/{payment.id}", headers=STUDENT_HEADERS)

    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert "iframes/777?payment_token=pk_live" in response.text
    assert "payment_success" in response.text


@pytest.mark.asyncio
async def test_iframe_not_pending(client, db):
    await create_course(db)
    payment = await create_payment(db, status=PaymentStatus.COMPLETED)

    response = await client.get(f"/api/payments/iframe/{payment.id}", headers=STUDENT_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PAYMENT_NOT_PENDING"


@pytest.mark.asyncio
async def test_iframe_missing_key(client, db):
    await create_course(db)
    payment = await create_payment(db)

    response = await client.get(f"/api/payments/iframe/{payment.id}", headers=STUDENT_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PAYMENT_KEY_NOT_FOUND"


@pytest.mark.asyncio
async def test_iframe_other_user(client, db):
    await create_course(db)
    payment = await create_payment(db, user_id="student-2")

    response = await client.get(f"/api/payments/iframe/{payment.id}", headers=STUDENT_HEADERS)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_coupon_preview(client, db):
    await create_course(db, price="200.00")

    response = await client.post(
        "/api/payments/coupons/validate",
        json={"code": "NOPE", "courseId": "course-1"},
        headers=STUDENT_HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["isValid"] is False
    assert data["finalAmount"] == 200.0


# --- Wallet ---

@pytest.mark.asyncio
async def test_wallet_balance_and_history(client, db):
    wallet = WalletService(db)
    await wallet.credit("student-1", Decimal("25"))
    await db.commit()

    balance = await client.get("/api/wallet/balance", headers=STUDENT_HEADERS)
    history = await client.get("/api/wallet/transactions", params={"limit": 5}, headers=STUDENT_HEADERS)

    assert balance.json()["data"]["balance"] == 25.0
    assert history.json()["data"]["pagination"]["total"] == 1
    assert history.json()["data"]["transactions"][0]["amount"] == 25.0


@pytest.mark.asyncio
async def test_admin_adjust_requires_admin(client):
    response = await client.post(
        "/api/admin/wallet/adjust",
        json={"userId": "student-1", "amount": "10", "reason": "Goodwill"},
        headers=STUDENT_HEADERS,
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_adjust(client, db):
    response = await client.post(
        "/api/admin/wallet/adjust",
        json={"userId": "student-1", "amount": "10", "reason": "Goodwill"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["data"]["balance"] == 10.0


@pytest.mark.asyncio
async def test_admin_adjust_overdraw_400(client):
    response = await client.post(
        "/api/admin/wallet/adjust",
        json={"userId": "student-1", "amount": "-10", "reason": "Correction"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_WALLET_BALANCE"


# --- Enrollments ---

@pytest.mark.asyncio
async def test_enrollment_status_follows_webhook(client, db, cache):
    await create_course(db)
    await create_payment(db)

    before = await client.get("/api/enrollments/course-1", headers=STUDENT_HEADERS)
    assert before.json()["data"]["enrolled"] is False

    body, signature = webhook_body()
    await client.post("/webhooks/paymob", json=body, params={"hmac": signature})

    after = await client.get("/api/enrollments/course-1", headers=STUDENT_HEADERS)
    assert after.json()["data"] == {"courseId": "course-1", "enrolled": True}


@pytest.mark.asyncio
async def test_course_access_denied_without_enrollment(client, db):
    await create_course(db)

    response = await client.get("/api/enrollments/course-1/access", headers=STUDENT_HEADERS)

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_course_access_granted(client, db):
    await create_course(db)
    db.add(Enrollment(user_id="student-1", course_id="course-1"))
    await db.commit()

    response = await client.get("/api/enrollments/course-1/access", headers=STUDENT_HEADERS)

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_admin_bypasses_course_access(client):
    response = await client.get("/api/enrollments/course-1/access", headers=ADMIN_HEADERS)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json()["status"] == "healthy"
