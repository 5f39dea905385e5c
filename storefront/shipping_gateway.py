"""
Shipping carrier gateway: rate quotes, carrier orders and shipping labels.

ShippoGateway talks to the Shippo REST API. FakeShippingGateway returns
canned rates for development and tests.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from storefront.config import Config
from storefront.exceptions import ShippingGatewayError, ValidationError
from storefront.models import Cart, ShippingRate, to_money

logger = logging.getLogger(__name__)

# Parcel dimensions are not tracked per product yet
DEFAULT_PARCEL = {"length": "10", "width": "8", "height": "4", "distance_unit": "in"}

# Used when the carrier fails or returns no rates so checkout can proceed
FALLBACK_RATE = {
    "amount": "5.00",
    "currency": "USD",
    "provider": "USPS",
    "provider_image_75": "https://shippo-static.s3.amazonaws.com/providers/75/USPS.png",
    "provider_image_200": "https://shippo-static.s3.amazonaws.com/providers/200/USPS.png",
    "servicelevel": {
        "name": "First-Class Package/Mail Parcel",
        "token": "usps_first",
    },
    "estimated_days": 5,
}


def fallback_rate() -> ShippingRate:
    return ShippingRate.model_validate(FALLBACK_RATE)


def select_lowest_rate(rates: List[ShippingRate]) -> ShippingRate:
    """Cheapest rate by amount; the first one wins a tie. Empty input gives the fallback rate."""
    if not rates:
        return fallback_rate()
    return min(rates, key=lambda rate: Decimal(rate.amount))


def cart_weight_oz(cart: Cart) -> Decimal:
    weight = Decimal("0")
    for item in cart.cart_items:
        if item.product is not None:
            weight += item.product.weight_oz * item.qty
    return weight


def build_shipment_request(cart: Cart, from_address: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Carrier shipment payload for the cart contents and its shipping address"""
    if cart.shipping is None:
        raise ValidationError("A shipping address is required to quote shipping rates")

    shipping = cart.shipping
    return {
        "address_from": from_address if from_address is not None else Config.SHIPPING_FROM_ADDRESS,
        "address_to": {
            "name": shipping.full_name,
            "company": shipping.company,
            "street1": shipping.street_address,
            "street2": shipping.extended_address,
            "city": shipping.city,
            "state": shipping.state,
            "zip": shipping.postal_code,
            "country": shipping.country_code_alpha2,
            "email": shipping.email,
        },
        "parcels": [{
            **DEFAULT_PARCEL,
            "weight": str(to_money(cart_weight_oz(cart))),
            "mass_unit": "oz",
        }],
        "async": False,
    }


def build_order_request(cart: Cart) -> Dict[str, Any]:
    """Carrier order payload for a paid cart, used later for packing slips and labels"""
    if cart.shipping is None or cart.shipping_rate is None:
        raise ValidationError("Cart has no shipping address or shipping rate")

    shipping = cart.shipping
    line_items = []
    total_weight = Decimal("0")
    for item in cart.cart_items:
        product = item.product
        item_weight = (product.weight_oz if product else Decimal("0")) * item.qty
        total_weight += item_weight
        line_items.append({
            "quantity": item.qty,
            "sku": item.product_id,
            "title": product.title if product else item.product_id,
            "total_price": str(item.total_item_price),
            "currency": Config.CURRENCY,
            "weight": str(to_money(item_weight)),
            "weight_unit": "oz",
        })

    return {
        "to_address": {
            "city": shipping.city,
            "company": shipping.company,
            "country": shipping.country_code_alpha2,
            "email": shipping.email,
            "name": shipping.full_name,
            "state": shipping.state,
            "street1": shipping.street_address,
            "zip": shipping.postal_code,
        },
        "line_items": line_items,
        "placed_at": datetime.now(timezone.utc).isoformat(),
        "order_number": cart.token,
        "order_status": "PAID",
        "shipping_cost": str(cart.shipping_rate.amount),
        "shipping_cost_currency": cart.shipping_rate.currency,
        "shipping_method": cart.shipping_rate.servicelevel.name,
        "subtotal_price": str(cart.sub_total),
        "total_price": str(cart.grand_total),
        "total_tax": str(cart.sales_tax),
        "currency": Config.CURRENCY,
        "weight": str(to_money(total_weight)),
        "weight_unit": "oz",
    }


class ShippingGateway(ABC):
    """Abstract shipping carrier interface"""

    @abstractmethod
    def quote_rates(self, cart: Cart) -> List[ShippingRate]:
        """All rates the carrier quotes for the cart contents"""
        ...

    @abstractmethod
    def create_order(self, cart: Cart) -> Dict[str, Any]:
        """Create a carrier order for a paid cart. Returns the carrier payload (with object_id)."""
        ...

    @abstractmethod
    def create_label(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Buy a shipping label. Returns the carrier transaction (with object_id)."""
        ...

    @abstractmethod
    def get_label(self, transaction_id: str) -> Dict[str, Any]:
        """Fetch a previously bought shipping label"""
        ...

    @abstractmethod
    def get_packing_slip(self, order_id: str) -> Dict[str, Any]:
        """Packing slip for a carrier order: slip_url, created and expires"""
        ...


class ShippoGateway(ShippingGateway):
    """Shippo REST API adapter"""

    def __init__(
        self,
        api_token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.client = httpx.Client(
            base_url=base_url or Config.SHIPPO_API_URL,
            headers={"Authorization": f"ShippoToken {api_token}"},
            timeout=timeout or Config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ShippingGatewayError(f"Shipping carrier unavailable: {e}")

        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            raise ShippingGatewayError(
                f"Shipping carrier returned {response.status_code}", payload=payload
            )
        return response.json()

    def quote_rates(self, cart: Cart) -> List[ShippingRate]:
        shipment = self._request("POST", "/shipments/", json=build_shipment_request(cart))
        rates = [ShippingRate.model_validate(rate) for rate in shipment.get("rates") or []]
        logger.info("Shipping rates quoted", extra={"rate_count": len(rates)})
        return rates

    def create_order(self, cart: Cart) -> Dict[str, Any]:
        return self._request("POST", "/orders/", json=build_order_request(cart))

    def create_label(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/transactions/", json=data)

    def get_label(self, transaction_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/transactions/{transaction_id}")

    def get_packing_slip(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}/packingslip/")


class FakeShippingGateway(ShippingGateway):
    """Configurable fake carrier for development and tests"""

    def __init__(self, rates: Optional[List[Dict[str, Any]]] = None):
        self.rates = rates if rates is not None else [
            {"amount": "9.99", "currency": "USD", "provider": "UPS",
             "servicelevel": {"name": "Ground", "token": "ups_ground"}, "estimated_days": 3,
             "object_id": "rate_ups_ground"},
            {"amount": "7.50", "currency": "USD", "provider": "USPS",
             "servicelevel": {"name": "Priority Mail", "token": "usps_priority"}, "estimated_days": 2,
             "object_id": "rate_usps_priority"},
        ]
        self.should_succeed = True
        self.failure_reason = "Carrier unavailable"
        self.calls: List[Dict[str, Any]] = []
        self.labels: Dict[str, Dict[str, Any]] = {}

    def configure(
        self,
        should_succeed: bool = True,
        rates: Optional[List[Dict[str, Any]]] = None,
        failure_reason: str = "Carrier unavailable"
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        if rates is not None:
            self.rates = rates

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append({"method": method, **kwargs})
        if not self.should_succeed:
            raise ShippingGatewayError(self.failure_reason)

    def quote_rates(self, cart: Cart) -> List[ShippingRate]:
        self._record("quote_rates", shipment=build_shipment_request(cart))
        return [ShippingRate.model_validate(rate) for rate in self.rates]

    def create_order(self, cart: Cart) -> Dict[str, Any]:
        order = build_order_request(cart)
        self._record("create_order", order=order)
        return {"object_id": f"order_{cart.token[:8]}", **order}

    def create_label(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_label", data=data)
        object_id = f"txn_{len(self.labels) + 1}"
        label = {
            "object_id": object_id,
            "status": "SUCCESS",
            "rate": data.get("rate"),
            "label_url": f"https://fake-carrier.example.com/labels/{object_id}.pdf",
            "tracking_number": f"FAKE{len(self.labels) + 1:010d}",
        }
        self.labels[object_id] = label
        return label

    def get_label(self, transaction_id: str) -> Dict[str, Any]:
        self._record("get_label", transaction_id=transaction_id)
        if transaction_id not in self.labels:
            raise ShippingGatewayError(f"Shipping label not found: {transaction_id}")
        return self.labels[transaction_id]

    def get_packing_slip(self, order_id: str) -> Dict[str, Any]:
        self._record("get_packing_slip", order_id=order_id)
        created = datetime.now(timezone.utc)
        return {
            "slip_url": f"https://fake-carrier.example.com/packingslips/{order_id}.pdf",
            "created": created.isoformat(),
            "expires": (created + timedelta(hours=24)).isoformat(),
        }


def get_lowest_shipping_rate(gateway: ShippingGateway, cart: Cart) -> ShippingRate:
    """
    Quote rates for the cart and pick the cheapest.

    Carrier failures are not surfaced: the fallback rate is used instead.
    """
    try:
        rates = gateway.quote_rates(cart)
    except ShippingGatewayError as e:
        logger.warning(
            f"Shipping rate quote failed, using fallback rate: {e}",
            extra={"carrier_payload": e.payload}
        )
        rates = []

    if not rates:
        logger.warning("No shipping rates returned, using fallback rate")
    return select_lowest_rate(rates)
