"""
Paymob Service - order creation via the Accept API and webhook HMAC checks.
"""

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from app.config import settings
from app.fsm.states import PaymentErrorKind, PaymentMethod
from app.services.errors import PaymentGatewayError
from app.services.money import Number, to_cents, utcnow

logger = logging.getLogger(__name__)

# Paymob's documented HMAC field order for TRANSACTION callbacks.
# Dotted names are nested lookups inside the transaction object.
TRANSACTION_HMAC_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)

PLACEHOLDER = "NA"


# --- Initiation results ---

class IframeInitiation(BaseModel):
    """Card flow: the client loads Paymob's hosted iframe with payment_key."""
    type: Literal["iframe"] = "iframe"
    order_id: int
    payment_key: str


class RedirectInitiation(BaseModel):
    """Mobile wallet flow: the client is redirected to redirect_url."""
    type: Literal["redirect"] = "redirect"
    order_id: int
    payment_key: str
    redirect_url: str


PaymentInitiationResult = Union[IframeInitiation, RedirectInitiation]


# --- Stored gateway response (Payment.gateway_response) ---

class IframeGatewayResponse(BaseModel):
    kind: Literal["iframe"] = "iframe"
    payment_method: str = PaymentMethod.CARD.value
    initiated_at: datetime
    payment_key: str
    # Audit only, never read by code
    raw: Optional[Dict[str, Any]] = None


class RedirectGatewayResponse(BaseModel):
    kind: Literal["redirect"] = "redirect"
    payment_method: str = PaymentMethod.WALLET.value
    initiated_at: datetime
    redirect_url: str
    raw: Optional[Dict[str, Any]] = None


GatewayResponse = Annotated[
    Union[IframeGatewayResponse, RedirectGatewayResponse],
    Field(discriminator="kind"),
]

_gateway_response_adapter: TypeAdapter = TypeAdapter(GatewayResponse)


def gateway_response_from_initiation(
    result: PaymentInitiationResult,
    payment_method: PaymentMethod,
) -> Union[IframeGatewayResponse, RedirectGatewayResponse]:
    raw = {"order_id": result.order_id}
    if isinstance(result, RedirectInitiation):
        return RedirectGatewayResponse(
            payment_method=payment_method.value,
            initiated_at=utcnow(),
            redirect_url=result.redirect_url,
            raw=raw,
        )
    return IframeGatewayResponse(
        payment_method=payment_method.value,
        initiated_at=utcnow(),
        payment_key=result.payment_key,
        raw=raw,
    )


def parse_gateway_response(
    data: Optional[Mapping[str, Any]],
) -> Optional[Union[IframeGatewayResponse, RedirectGatewayResponse]]:
    """Parse a stored gateway response. Unknown shapes return None."""
    if not data:
        return None
    try:
        return _gateway_response_adapter.validate_python(data)
    except ValidationError:
        logger.warning(f"Unrecognized stored gateway response: {data!r}")
        return None


# --- HMAC ---

def _lookup(data: Mapping[str, Any], dotted: str) -> Any:
    value: Any = data
    for part in dotted.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _canonical_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_hmac_message(transaction: Mapping[str, Any]) -> str:
    """Concatenate the signed transaction fields in Paymob's order."""
    return "".join(_canonical_value(_lookup(transaction, field)) for field in TRANSACTION_HMAC_FIELDS)


def compute_hmac(transaction: Mapping[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        build_hmac_message(transaction).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_hmac(transaction: Mapping[str, Any], signature: Optional[str], secret: str) -> bool:
    """
    Recompute the transaction HMAC and compare in constant time.
    A missing secret or signature never verifies.
    """
    if not secret:
        logger.error("Paymob HMAC secret not configured; rejecting webhook")
        return False
    if not signature:
        return False

    expected = compute_hmac(transaction, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("ascii", "ignore"))


# --- Advisory failure classification ---

def classify_failure(message: Optional[str]) -> PaymentErrorKind:
    """Map a gateway/bank message to a UX hint. Not authoritative."""
    if not message:
        return PaymentErrorKind.UNKNOWN

    text = message.lower()
    if "insufficient" in text:
        return PaymentErrorKind.INSUFFICIENT_FUNDS
    if "timeout" in text or "timed out" in text:
        return PaymentErrorKind.TIMEOUT
    if "declin" in text or "do not honor" in text or "not permitted" in text:
        return PaymentErrorKind.CARD_DECLINED
    if "network" in text or "connect" in text:
        return PaymentErrorKind.NETWORK
    return PaymentErrorKind.UNKNOWN


class PaymobService:
    """Service for the Paymob Accept API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        hmac_secret: Optional[str] = None,
        integration_id_card: Optional[str] = None,
        integration_id_wallet: Optional[str] = None,
        iframe_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.paymob_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.paymob_api_key
        self.hmac_secret = hmac_secret if hmac_secret is not None else settings.paymob_hmac_secret
        self.integration_id_card = integration_id_card or settings.paymob_integration_id_card
        self.integration_id_wallet = integration_id_wallet or settings.paymob_integration_id_wallet
        self.iframe_id = iframe_id if iframe_id is not None else settings.paymob_iframe_id
        self.timeout = timeout or settings.paymob_timeout_seconds
        self.transport = transport

    def verify_webhook(self, transaction: Mapping[str, Any], signature: Optional[str]) -> bool:
        return verify_hmac(transaction, signature, self.hmac_secret)

    def build_iframe_url(self, payment_key: str) -> Optional[str]:
        """Hosted payment page URL, or None when no iframe id is configured."""
        if not self.iframe_id:
            return None
        return f"{self.base_url}/acceptance/iframes/{self.iframe_id}?payment_token={payment_key}"

    async def initiate_payment(
        self,
        amount: Number,
        currency: str,
        merchant_order_id: str,
        billing: Mapping[str, Optional[str]],
        payment_method: PaymentMethod,
        wallet_number: Optional[str] = None,
    ) -> PaymentInitiationResult:
        """
        Register an order and obtain what the client needs to pay it.

        Raises PaymentGatewayError on timeout, transport failure or any
        unexpected gateway response.
        """
        amount_cents = to_cents(amount)

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            auth_token = await self._get_auth_token(client)
            order_id = await self._register_order(client, auth_token, amount_cents, currency, merchant_order_id)

            if payment_method == PaymentMethod.WALLET:
                if not wallet_number:
                    raise PaymentGatewayError("Wallet number is required for wallet payments")
                payment_key = await self._get_payment_key(
                    client, auth_token, amount_cents, currency, order_id, billing, self.integration_id_wallet
                )
                redirect_url = await self._get_wallet_redirect_url(client, payment_key, wallet_number)
                logger.info(f"Paymob wallet order {order_id} registered for {merchant_order_id}")
                return RedirectInitiation(order_id=order_id, payment_key=payment_key, redirect_url=redirect_url)

            payment_key = await self._get_payment_key(
                client, auth_token, amount_cents, currency, order_id, billing, self.integration_id_card
            )
            logger.info(f"Paymob card order {order_id} registered for {merchant_order_id}")
            return IframeInitiation(order_id=order_id, payment_key=payment_key)

    async def _get_auth_token(self, client: httpx.AsyncClient) -> str:
        data = await self._post(client, "/auth/tokens", {"api_key": self.api_key}, "authentication")
        return self._require(data, "token", "authentication")

    async def _register_order(
        self,
        client: httpx.AsyncClient,
        auth_token: str,
        amount_cents: int,
        currency: str,
        merchant_order_id: str,
    ) -> int:
        data = await self._post(
            client,
            "/ecommerce/orders",
            {
                "auth_token": auth_token,
                "delivery_needed": "false",
                "amount_cents": amount_cents,
                "currency": currency,
                "merchant_order_id": merchant_order_id,
                "items": [],
            },
            "order registration",
        )
        order_id = self._require(data, "id", "order registration")
        try:
            return int(order_id)
        except (TypeError, ValueError):
            raise PaymentGatewayError(f"Paymob order registration returned invalid id {order_id!r}")

    async def _get_payment_key(
        self,
        client: httpx.AsyncClient,
        auth_token: str,
        amount_cents: int,
        currency: str,
        order_id: int,
        billing: Mapping[str, Optional[str]],
        integration_id: str,
    ) -> str:
        billing_data = {
            "email": billing.get("email") or PLACEHOLDER,
            "first_name": billing.get("first_name") or PLACEHOLDER,
            "last_name": billing.get("last_name") or PLACEHOLDER,
            "phone_number": billing.get("phone_number") or PLACEHOLDER,
            "apartment": PLACEHOLDER,
            "floor": PLACEHOLDER,
            "street": PLACEHOLDER,
            "building": PLACEHOLDER,
            "shipping_method": PLACEHOLDER,
            "postal_code": PLACEHOLDER,
            "city": PLACEHOLDER,
            "country": PLACEHOLDER,
            "state": PLACEHOLDER,
        }
        data = await self._post(
            client,
            "/acceptance/payment_keys",
            {
                "auth_token": auth_token,
                "amount_cents": amount_cents,
                "expiration": settings.paymob_payment_key_expiration,
                "order_id": order_id,
                "billing_data": billing_data,
                "currency": currency,
                "integration_id": integration_id,
            },
            "payment key",
        )
        return self._require(data, "token", "payment key")

    async def _get_wallet_redirect_url(
        self,
        client: httpx.AsyncClient,
        payment_key: str,
        wallet_number: str,
    ) -> str:
        data = await self._post(
            client,
            "/acceptance/payments/pay",
            {
                "source": {"identifier": wallet_number, "subtype": "WALLET"},
                "payment_token": payment_key,
            },
            "wallet redirect",
        )
        return self._require(data, "redirect_url", "wallet redirect")

    async def _post(
        self,
        client: httpx.AsyncClient,
        path: str,
        payload: Dict[str, Any],
        step: str,
    ) -> Dict[str, Any]:
        try:
            response = await client.post(path, json=payload)
        except httpx.TimeoutException:
            logger.error(f"Paymob {step} request timed out")
            raise PaymentGatewayError(f"Paymob {step} timed out", kind=PaymentErrorKind.TIMEOUT)
        except httpx.TransportError as e:
            logger.error(f"Paymob {step} network error: {e}")
            raise PaymentGatewayError(f"Paymob {step} network error", kind=PaymentErrorKind.NETWORK)

        if response.status_code >= 400:
            logger.error(f"Paymob {step} HTTP error: {response.status_code} {response.text[:500]}")
            raise PaymentGatewayError(
                f"Paymob {step} failed",
                details={"status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Paymob {step} returned non-JSON body")
            raise PaymentGatewayError(f"Paymob {step} returned an invalid response")

        if not isinstance(data, dict):
            raise PaymentGatewayError(f"Paymob {step} returned an invalid response")
        return data

    @staticmethod
    def _require(data: Mapping[str, Any], key: str, step: str) -> Any:
        value = data.get(key)
        if value in (None, ""):
            logger.error(f"Paymob {step} response missing {key!r}")
            raise PaymentGatewayError(f"Paymob {step} response missing {key}")
        return value
