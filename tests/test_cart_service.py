from decimal import Decimal

import pytest

from storefront.exceptions import ProductNotFoundError, ShippingGatewayError, ValidationError
from storefront.shipping_gateway import fallback_rate

from tests.conftest import APRON_ID, SHIRT_ID


@pytest.fixture()
def cart_service(services):
    return services.cart_service


@pytest.fixture()
def cart_with_shirts(cart_service):
    token, _ = cart_service.add_item(None, SHIRT_ID, "SIZE_MD", 2)
    return token


def test_missing_token_gets_new_cart(cart_service):
    token, cart, created = cart_service.get_or_create_active(None)
    assert created
    assert cart.token == token
    assert cart.cart_items == []

    same_token, _, created_again = cart_service.get_or_create_active(token)
    assert same_token == token
    assert not created_again


def test_add_item_updates_totals(cart_service):
    token, cart = cart_service.add_item(None, SHIRT_ID, "SIZE_MD", 2)
    assert cart.token == token
    assert cart.num_items == 2
    assert cart.sub_total == Decimal("40.00")
    assert cart.grand_total == Decimal("40.00")


def test_add_unknown_product(cart_service):
    with pytest.raises(ProductNotFoundError):
        cart_service.add_item(None, "missing-product", "SIZE_MD", 1)


def test_shipping_address_sets_tax_then_rate(cart_service, services, cart_with_shirts, shipping_address, monkeypatch):
    patches = []
    original = services.carts.update_cart_fields

    def spy(token, patch, require_open=True):
        patches.append(set(patch))
        return original(token, patch, require_open)

    monkeypatch.setattr(services.carts, "update_cart_fields", spy)

    cart = cart_service.set_shipping_address(cart_with_shirts, shipping_address)

    assert "sales_tax" in patches[0] and "shipping" in patches[0]
    assert "shipping_rate" not in patches[0]
    assert "shipping_rate" in patches[1]

    assert cart.shipping.postal_code == "94105"
    assert cart.sales_tax == Decimal("2.90")
    assert cart.shipping_rate.amount == Decimal("7.50")
    assert cart.shipping_total == Decimal("7.50")
    assert cart.grand_total == Decimal("50.40")


def test_shipping_address_falls_back_when_carrier_fails(
    cart_service, shipping_gateway, cart_with_shirts, shipping_address
):
    shipping_gateway.configure(should_succeed=False)

    cart = cart_service.set_shipping_address(cart_with_shirts, shipping_address)

    assert cart.shipping_rate.model_dump() == fallback_rate().model_dump()
    assert cart.grand_total == Decimal("47.90")


def test_item_changes_recompute_tax_but_keep_rate(cart_service, cart_with_shirts, shipping_address):
    cart_service.set_shipping_address(cart_with_shirts, shipping_address)

    _, cart = cart_service.add_item(cart_with_shirts, APRON_ID, "SIZE_OS", 1)

    assert cart.sub_total == Decimal("75.50")
    assert cart.sales_tax == Decimal("5.47")
    assert cart.shipping_total == Decimal("7.50")
    assert cart.grand_total == Decimal("88.47")

    apron_item = next(item for item in cart.cart_items if item.product_id == APRON_ID)
    cart = cart_service.remove_item(cart_with_shirts, apron_item.id)
    assert cart.grand_total == Decimal("50.40")


def test_set_item_qty_recomputes(cart_service, cart_with_shirts):
    item_id = cart_service.get_cart(cart_with_shirts).cart_items[0].id
    cart = cart_service.set_item_qty(cart_with_shirts, item_id, 5)
    assert cart.sub_total == Decimal("100.00")


def test_shipping_rates_require_address(cart_service, cart_with_shirts):
    with pytest.raises(ValidationError):
        cart_service.get_shipping_rates(cart_with_shirts)


def test_shipping_rates_surface_carrier_errors(cart_service, shipping_gateway, cart_with_shirts, shipping_address):
    cart_service.set_shipping_address(cart_with_shirts, shipping_address)
    shipping_gateway.configure(should_succeed=False)

    with pytest.raises(ShippingGatewayError):
        cart_service.get_shipping_rates(cart_with_shirts)


def test_choose_shipping_rate(cart_service, cart_with_shirts, shipping_address):
    cart_service.set_shipping_address(cart_with_shirts, shipping_address)
    rates = cart_service.get_shipping_rates(cart_with_shirts)
    ups = next(rate for rate in rates if rate.provider == "UPS")

    cart = cart_service.set_shipping_rate(cart_with_shirts, ups)

    assert cart.shipping_rate.object_id == "rate_ups_ground"
    assert cart.grand_total == Decimal("52.89")


def test_closed_cart_token_gets_new_cart(cart_service, services, cart_with_shirts):
    services.carts.begin_checkout(cart_with_shirts)
    services.carts.close(cart_with_shirts)

    token, cart, created = cart_service.get_or_create_active(cart_with_shirts)
    assert created
    assert token != cart_with_shirts
    assert cart.cart_items == []


def test_add_to_closed_cart_starts_a_new_one(cart_service, services, cart_with_shirts):
    services.carts.begin_checkout(cart_with_shirts)
    services.carts.close(cart_with_shirts)

    token, cart = cart_service.add_item(cart_with_shirts, APRON_ID, "SIZE_OS", 1)
    assert token != cart_with_shirts
    assert [item.product_id for item in cart.cart_items] == [APRON_ID]
    assert len(services.carts.require(cart_with_shirts).cart_items) == 1
