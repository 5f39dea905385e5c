"""
Payment gateway port and adapters.

SquareGateway captures card payments through the Square Payments API.
PayPalGateway creates PayPal orders for the buyer to approve and captures them.
FakePaymentGateway succeeds or declines on demand for development and tests.
Declines raise PaymentError carrying the provider's own error list.
"""
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

from storefront.config import Config
from storefront.exceptions import PaymentError, ValidationError
from storefront.models import PAYMENT_TYPE_CREDIT_CARD, PAYMENT_TYPE_PAYPAL, Cart, to_minor_units, to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeRequest:
    """Everything needed to capture one charge"""

    idempotency_key: str
    amount: int  # minor currency units
    currency: str
    source_id: str
    billing_address: Dict[str, Any] = field(default_factory=dict)
    shipping_address: Dict[str, Any] = field(default_factory=dict)
    buyer_email_address: Optional[str] = None

    def validate(self) -> None:
        if not self.idempotency_key.strip():
            raise ValidationError("idempotency_key is required")
        if self.amount <= 0:
            raise ValidationError("amount must be positive")
        if not self.source_id.strip():
            raise ValidationError("A payment source (nonce) is required")


@dataclass(frozen=True)
class ChargeResult:
    """Result of a successful capture"""

    transaction_id: str
    status: str
    raw: Dict[str, Any]


class PaymentGateway(ABC):
    """Abstract payment gateway interface"""

    payment_type = PAYMENT_TYPE_CREDIT_CARD

    @abstractmethod
    def charge(self, request: ChargeRequest) -> ChargeResult:
        """Capture a charge. Raises PaymentError when declined or rejected."""
        ...


class SquareGateway(PaymentGateway):
    """Square Payments API adapter"""

    def __init__(
        self,
        access_token: str,
        location_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.location_id = location_id
        self.client = httpx.Client(
            base_url=base_url or Config.SQUARE_API_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Square-Version": Config.SQUARE_API_VERSION,
            },
            timeout=timeout or Config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _payload(self, request: ChargeRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "idempotency_key": request.idempotency_key,
            "amount_money": {"amount": request.amount, "currency": request.currency},
            "source_id": request.source_id,
            "autocomplete": True,
            "billing_address": request.billing_address,
            "shipping_address": request.shipping_address,
        }
        if request.buyer_email_address:
            payload["buyer_email_address"] = request.buyer_email_address
        if self.location_id:
            payload["location_id"] = self.location_id
        return payload

    def charge(self, request: ChargeRequest) -> ChargeResult:
        request.validate()
        logger.info(
            "REQUEST: charge",
            extra={"amount": request.amount, "currency": request.currency}
        )

        try:
            response = self.client.post("/v2/payments", json=self._payload(request))
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway unreachable: {e}")
            raise PaymentError(message="Payment gateway unavailable")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            logger.info("RESPONSE: charge ERROR", extra={"status_code": response.status_code})
            if isinstance(body, dict) and body.get("errors"):
                raise PaymentError(errors=body["errors"])
            raise PaymentError(message="Invalid request")

        payment = (body or {}).get("payment") or {}
        logger.info("RESPONSE: charge", extra={"transaction_id": payment.get("id"), "status": payment.get("status")})
        return ChargeResult(
            transaction_id=payment.get("id", ""),
            status=payment.get("status", ""),
            raw=payment,
        )



def build_paypal_order_request(cart: Cart, currency: str, brand_name: str) -> Dict[str, Any]:
    """Orders API payload for a cart: grand total with its breakdown, items and ship-to address"""

    def money(value: Any) -> Dict[str, str]:
        return {"currency_code": currency, "value": str(to_money(value))}

    items = []
    for item in cart.cart_items:
        if item.product is None:
            continue
        line = {
            "name": item.product.title[:127],
            "sku": item.product.id,
            "unit_amount": money(item.product.price),
            "quantity": str(item.qty),
            "category": "PHYSICAL_GOODS",
        }
        if item.product.description_short:
            line["description"] = item.product.description_short[:127]
        items.append(line)

    purchase_unit: Dict[str, Any] = {
        "reference_id": cart.token,
        "amount": {
            **money(cart.grand_total),
            "breakdown": {
                "item_total": money(cart.sub_total),
                "shipping": money(cart.shipping_total),
                "tax_total": money(cart.sales_tax),
            },
        },
        "items": items,
    }
    if cart.shipping is not None:
        purchase_unit["shipping"] = {
            "name": {"full_name": cart.shipping.full_name},
            "address": {
                "address_line_1": cart.shipping.street_address,
                "address_line_2": cart.shipping.extended_address,
                "admin_area_2": cart.shipping.city,
                "admin_area_1": cart.shipping.state,
                "postal_code": cart.shipping.postal_code,
                "country_code": cart.shipping.country_code_alpha2,
            },
        }
    return {
        "intent": "CAPTURE",
        "application_context": {
            "brand_name": brand_name,
            "locale": "en-US",
            "shipping_preference": "NO_SHIPPING",
            "user_action": "PAY_NOW",
        },
        "purchase_units": [purchase_unit],
    }


class HostedPaymentGateway(PaymentGateway):
    """
    Gateway where the buyer approves an order on the provider's site.
    The approved order id is then captured through charge() as the source_id.
    """

    @abstractmethod
    def create_order(self, cart: Cart) -> str:
        """Create a provider order for the cart's grand total and return its id"""
        ...


class PayPalGateway(HostedPaymentGateway):
    """PayPal Orders v2 API adapter"""

    payment_type = PAYMENT_TYPE_PAYPAL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        currency: Optional[str] = None
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.currency = currency or Config.CURRENCY
        self.client = httpx.Client(
            base_url=base_url or Config.PAYPAL_API_URL,
            timeout=timeout or Config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        """OAuth client-credentials token, reused until shortly before it expires"""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = self._send(
            "POST", "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        self._token = response["access_token"]
        self._token_expires_at = time.monotonic() + max(int(response.get("expires_in", 0)) - 60, 0)
        return self._token

    def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"PayPal unreachable: {e}")
            raise PaymentError(message="Payment gateway unavailable")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            logger.info("RESPONSE: paypal ERROR", extra={"status_code": response.status_code, "path": path})
            if isinstance(body, dict):
                details = body.get("details")
                raise PaymentError(
                    errors=details if details else [body],
                    message=body.get("message") or "Invalid request",
                )
            raise PaymentError(message="Invalid request")
        return body or {}

    def _request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token()}", **(headers or {})}
        return self._send(method, path, headers=headers, **kwargs)

    def create_order(self, cart: Cart) -> str:
        payload = build_paypal_order_request(cart, self.currency, Config.PAYPAL_BRAND_NAME)
        logger.info("REQUEST: paypal create order", extra={"amount": str(cart.grand_total)})
        order = self._request(
            "POST", "/v2/checkout/orders", json=payload, headers={"Prefer": "return=representation"}
        )
        logger.info("RESPONSE: paypal create order", extra={"order_id": order.get("id")})
        return order["id"]

    def charge(self, request: ChargeRequest) -> ChargeResult:
        request.validate()
        order = self._request("GET", f"/v2/checkout/orders/{request.source_id}")
        units = order.get("purchase_units") or [{}]
        approved = to_minor_units((units[0].get("amount") or {}).get("value"))
        if approved != request.amount:
            logger.warning(
                "PayPal order amount does not match the cart",
                extra={"approved": approved, "amount": request.amount}
            )
            raise PaymentError(
                errors=[{"issue": "AMOUNT_MISMATCH", "description": "Order amount does not match the cart total"}],
                message="Order amount does not match the cart total",
            )

        logger.info("REQUEST: paypal capture", extra={"amount": request.amount, "currency": request.currency})
        captured = self._request(
            "POST", f"/v2/checkout/orders/{request.source_id}/capture",
            json={}, headers={"PayPal-Request-Id": request.idempotency_key, "Prefer": "return=representation"},
        )
        status = captured.get("status", "")
        logger.info("RESPONSE: paypal capture", extra={"transaction_id": captured.get("id"), "status": status})
        if status != "COMPLETED":
            raise PaymentError(
                errors=[{"issue": "ORDER_NOT_COMPLETED", "description": f"Order status is {status or 'unknown'}"}],
            )
        return ChargeResult(transaction_id=captured.get("id", ""), status=status, raw=captured)


class FakePaymentGateway(PaymentGateway):
    """Configurable fake payment gateway"""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.errors: List[Dict[str, Any]] = [
            {"category": "PAYMENT_METHOD_ERROR", "code": "GENERIC_DECLINE", "detail": "Card declined"}
        ]
        self.calls: List[Dict[str, Any]] = []

    def configure(self, should_succeed: bool, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        if errors is not None:
            self.errors = errors

    def charge(self, request: ChargeRequest) -> ChargeResult:
        request.validate()
        self.calls.append(asdict(request))

        if not self.should_succeed:
            raise PaymentError(errors=self.errors)

        transaction_id = f"fake_txn_{uuid4().hex[:12]}"
        return ChargeResult(
            transaction_id=transaction_id,
            status="COMPLETED",
            raw={
                "id": transaction_id,
                "status": "COMPLETED",
                "amount_money": {"amount": request.amount, "currency": request.currency},
                "buyer_email_address": request.buyer_email_address,
            },
        )


class FakePayPalGateway(FakePaymentGateway, HostedPaymentGateway):
    """Fake PayPal: orders are kept in memory and only known orders can be captured"""

    payment_type = PAYMENT_TYPE_PAYPAL

    def __init__(self) -> None:
        super().__init__()
        self.orders: Dict[str, Dict[str, Any]] = {}

    def create_order(self, cart: Cart) -> str:
        order_id = f"FAKE-ORDER-{len(self.orders) + 1}"
        self.orders[order_id] = build_paypal_order_request(cart, Config.CURRENCY, Config.PAYPAL_BRAND_NAME)
        return order_id

    def charge(self, request: ChargeRequest) -> ChargeResult:
        if request.source_id not in self.orders:
            self.calls.append(asdict(request))
            raise PaymentError(errors=[{"issue": "INVALID_RESOURCE_ID", "description": "Order not found"}])
        return super().charge(request)
