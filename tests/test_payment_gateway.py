import base64
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from storefront.exceptions import PaymentError, ValidationError
from storefront.models import PAYMENT_TYPE_CREDIT_CARD, PAYMENT_TYPE_PAYPAL, Cart, CartItem, Product
from storefront.payment_gateway import (
    ChargeRequest,
    FakePaymentGateway,
    FakePayPalGateway,
    PayPalGateway,
    SquareGateway,
    build_paypal_order_request,
)


def charge_request(**overrides):
    values = {
        "idempotency_key": "a" * 64,
        "amount": 5280,
        "currency": "USD",
        "source_id": "cnon:card-nonce-ok",
        "billing_address": {"postal_code": "94105"},
        "shipping_address": {"postal_code": "94105"},
        "buyer_email_address": "ada@example.com",
    }
    values.update(overrides)
    return ChargeRequest(**values)


class TestSquareGateway:
    def test_successful_charge(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"payment": {"id": "sq_pay_1", "status": "COMPLETED"}})

        gateway = SquareGateway("sq_token", location_id="L1", transport=httpx.MockTransport(handler))
        result = gateway.charge(charge_request())

        assert seen["path"] == "/v2/payments"
        assert seen["auth"] == "Bearer sq_token"
        assert seen["body"]["amount_money"] == {"amount": 5280, "currency": "USD"}
        assert seen["body"]["idempotency_key"] == "a" * 64
        assert seen["body"]["location_id"] == "L1"
        assert result.transaction_id == "sq_pay_1"
        assert result.raw == {"id": "sq_pay_1", "status": "COMPLETED"}

    def test_decline_propagates_provider_errors_unmodified(self):
        errors = [{"category": "PAYMENT_METHOD_ERROR", "code": "CVV_FAILURE", "detail": "Authorization error"}]
        transport = httpx.MockTransport(lambda request: httpx.Response(402, json={"errors": errors}))
        gateway = SquareGateway("sq_token", transport=transport)

        with pytest.raises(PaymentError) as exc_info:
            gateway.charge(charge_request())
        assert exc_info.value.errors == errors

    def test_unstructured_error_is_wrapped(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream exploded"))
        gateway = SquareGateway("sq_token", transport=transport)

        with pytest.raises(PaymentError) as exc_info:
            gateway.charge(charge_request())
        assert exc_info.value.errors is None
        assert exc_info.value.message == "Invalid request"

    def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = SquareGateway("sq_token", transport=httpx.MockTransport(handler))
        with pytest.raises(PaymentError, match="unavailable"):
            gateway.charge(charge_request())

    def test_rejects_invalid_request_before_calling(self):
        calls = []
        transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200, json={}))
        gateway = SquareGateway("sq_token", transport=transport)

        with pytest.raises(ValidationError):
            gateway.charge(charge_request(amount=0))
        assert calls == []


class TestFakePaymentGateway:
    def test_records_calls(self):
        gateway = FakePaymentGateway()
        result = gateway.charge(charge_request())
        assert result.status == "COMPLETED"
        assert gateway.calls[0]["amount"] == 5280

    def test_configured_decline(self):
        gateway = FakePaymentGateway()
        gateway.configure(should_succeed=False, errors=[{"code": "INSUFFICIENT_FUNDS"}])
        with pytest.raises(PaymentError) as exc_info:
            gateway.charge(charge_request())
        assert exc_info.value.errors == [{"code": "INSUFFICIENT_FUNDS"}]

    def test_card_payment_type(self):
        assert FakePaymentGateway.payment_type == PAYMENT_TYPE_CREDIT_CARD
        assert SquareGateway.payment_type == PAYMENT_TYPE_CREDIT_CARD


@pytest.fixture()
def cart(shipping_address):
    now = datetime.now(timezone.utc)
    product = Product(
        id="p1", title="Linen Work Shirt", description_short="Heavy linen", price=Decimal("20.00")
    )
    return Cart(
        token="c3b1c8a4-1d7e-4f3a-9a51-7f1f4a0e6b11",
        shipping=shipping_address,
        sub_total=Decimal("40.00"),
        shipping_total=Decimal("9.99"),
        sales_tax=Decimal("2.81"),
        grand_total=Decimal("52.80"),
        created_at=now,
        cart_items=[CartItem(id="i1", cart_token="t", product_id="p1", qty=2, created_at=now, product=product)],
    )


class PayPalSandbox:
    """MockTransport handler that answers like the PayPal Orders API"""

    def __init__(self, order_value="52.80", capture_status="COMPLETED"):
        self.order_value = order_value
        self.capture_status = capture_status
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={"id": "ORDER-1", "status": "CREATED"})
        if path.endswith("/capture"):
            return httpx.Response(201, json={"id": "ORDER-1", "status": self.capture_status})
        return httpx.Response(200, json={
            "id": "ORDER-1",
            "status": "APPROVED",
            "purchase_units": [{"amount": {"currency_code": "USD", "value": self.order_value}}],
        })

    def paths(self):
        return [(request.method, request.url.path) for request in self.requests]


class TestPayPalOrderRequest:
    def test_amount_breakdown_items_and_address(self, cart):
        payload = build_paypal_order_request(cart, "USD", "Storefront")

        assert payload["intent"] == "CAPTURE"
        assert payload["application_context"]["brand_name"] == "Storefront"
        [unit] = payload["purchase_units"]
        assert unit["amount"]["value"] == "52.80"
        assert unit["amount"]["breakdown"] == {
            "item_total": {"currency_code": "USD", "value": "40.00"},
            "shipping": {"currency_code": "USD", "value": "9.99"},
            "tax_total": {"currency_code": "USD", "value": "2.81"},
        }
        assert unit["items"] == [{
            "name": "Linen Work Shirt",
            "sku": "p1",
            "unit_amount": {"currency_code": "USD", "value": "20.00"},
            "quantity": "2",
            "category": "PHYSICAL_GOODS",
            "description": "Heavy linen",
        }]
        assert unit["shipping"]["name"] == {"full_name": "Ada Lovelace"}
        assert unit["shipping"]["address"]["admin_area_2"] == "San Francisco"
        assert unit["shipping"]["address"]["country_code"] == "US"


class TestPayPalGateway:
    def test_create_order(self, cart):
        sandbox = PayPalSandbox()
        gateway = PayPalGateway("client", "secret", transport=httpx.MockTransport(sandbox))

        assert gateway.create_order(cart) == "ORDER-1"

        token_request, order_request = sandbox.requests
        expected = base64.b64encode(b"client:secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"
        assert order_request.headers["Authorization"] == "Bearer A21-token"
        assert json.loads(order_request.content)["purchase_units"][0]["amount"]["value"] == "52.80"

    def test_access_token_is_reused(self, cart):
        sandbox = PayPalSandbox()
        gateway = PayPalGateway("client", "secret", transport=httpx.MockTransport(sandbox))

        gateway.create_order(cart)
        gateway.create_order(cart)

        assert [path for _, path in sandbox.paths()].count("/v1/oauth2/token") == 1

    def test_capture(self):
        sandbox = PayPalSandbox()
        gateway = PayPalGateway("client", "secret", transport=httpx.MockTransport(sandbox))

        result = gateway.charge(charge_request(source_id="ORDER-1"))

        assert sandbox.paths()[1:] == [
            ("GET", "/v2/checkout/orders/ORDER-1"),
            ("POST", "/v2/checkout/orders/ORDER-1/capture"),
        ]
        assert sandbox.requests[-1].headers["PayPal-Request-Id"] == "a" * 64
        assert result.transaction_id == "ORDER-1"
        assert result.status == "COMPLETED"
        assert gateway.payment_type == PAYMENT_TYPE_PAYPAL

    def test_amount_mismatch_is_not_captured(self):
        sandbox = PayPalSandbox(order_value="10.00")
        gateway = PayPalGateway("client", "secret", transport=httpx.MockTransport(sandbox))

        with pytest.raises(PaymentError) as exc_info:
            gateway.charge(charge_request(source_id="ORDER-1"))

        assert exc_info.value.errors[0]["issue"] == "AMOUNT_MISMATCH"
        assert not any(path.endswith("/capture") for _, path in sandbox.paths())

    def test_incomplete_capture_is_declined(self):
        sandbox = PayPalSandbox(capture_status="PENDING")
        gateway = PayPalGateway("client", "secret", transport=httpx.MockTransport(sandbox))

        with pytest.raises(PaymentError) as exc_info:
            gateway.charge(charge_request(source_id="ORDER-1"))
        assert exc_info.value.errors[0]["issue"] == "ORDER_NOT_COMPLETED"

    def test_provider_error_details_are_relayed(self):
        details = [{"issue": "INSTRUMENT_DECLINED", "description": "The instrument presented was declined"}]

        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
            return httpx.Response(422, json={
                "name": "UNPROCESSABLE_ENTITY", "message": "The requested action could not be performed",
                "details": details,
            })

        gateway = PayPalGateway("client", "secret", transport=httpx.MockTransport(handler))
        with pytest.raises(PaymentError) as exc_info:
            gateway.charge(charge_request(source_id="ORDER-1"))

        assert exc_info.value.errors == details
        assert exc_info.value.message == "The requested action could not be performed"

    def test_bad_credentials(self, cart):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "invalid_client"}))
        gateway = PayPalGateway("client", "wrong", transport=transport)

        with pytest.raises(PaymentError) as exc_info:
            gateway.create_order(cart)
        assert exc_info.value.errors == [{"error": "invalid_client"}]


class TestFakePayPalGateway:
    def test_captures_known_orders_only(self, cart):
        gateway = FakePayPalGateway()
        order_id = gateway.create_order(cart)

        assert gateway.charge(charge_request(source_id=order_id)).status == "COMPLETED"
        with pytest.raises(PaymentError):
            gateway.charge(charge_request(source_id="ORDER-UNKNOWN"))
        assert len(gateway.calls) == 2
