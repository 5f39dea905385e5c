from decimal import Decimal

import pytest

from storefront.cart_token import mint_token
from storefront.exceptions import (
    CartItemNotFoundError,
    CartNotActiveError,
    CartNotFoundError,
    LimitExceededError,
)
from storefront.models import BillingAddress, CartStatus

from tests.conftest import APRON_ID, SHIRT_ID


@pytest.fixture()
def carts(services):
    return services.carts


@pytest.fixture()
def shirt(services):
    return services.catalog.get(SHIRT_ID)


@pytest.fixture()
def apron(services):
    return services.catalog.get(APRON_ID)


@pytest.fixture()
def token(carts):
    token = mint_token()
    carts.create(token)
    return token


def test_create_and_fetch(carts, token):
    cart = carts.get_by_token(token)
    assert cart.token == token
    assert cart.status == CartStatus.OPEN
    assert cart.grand_total == Decimal("0.00")
    assert cart.cart_items == []


def test_unknown_token(carts):
    assert carts.get_by_token(mint_token()) is None
    assert carts.get_active(None) is None
    with pytest.raises(CartNotFoundError):
        carts.require(mint_token())


def test_same_product_and_size_increments(carts, token, shirt):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 2)

    items = carts.require(token).cart_items
    assert len(items) == 1
    assert items[0].qty == 3
    assert items[0].variants == {"size": "SIZE_MD"}


def test_different_sizes_are_separate_items(carts, token, shirt):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)
    carts.add_or_increment_item(token, shirt, "SIZE_SM", 1)

    items = carts.require(token).cart_items
    assert sorted(item.variants["size"] for item in items) == ["SIZE_MD", "SIZE_SM"]


def test_items_newest_first(carts, token, shirt, apron):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)
    carts.add_or_increment_item(token, apron, "SIZE_OS", 1)

    items = carts.require(token).cart_items
    assert [item.product_id for item in items] == [APRON_ID, SHIRT_ID]


def test_products_only_show_visible_sizes_and_pics_in_order(carts, token, shirt):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)

    product = carts.require(token).cart_items[0].product
    assert [size.size for size in product.sizes] == ["SIZE_SM", "SIZE_MD"]
    assert [pic.id for pic in product.pics] == ["p-1", "p-2"]


def test_quantity_limit(carts, token, shirt):
    with pytest.raises(LimitExceededError):
        carts.add_or_increment_item(token, shirt, "SIZE_MD", 100)


def test_remove_item(carts, token, shirt):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)
    item_id = carts.require(token).cart_items[0].id

    carts.remove_item(token, item_id)
    assert carts.require(token).cart_items == []

    # the variant slot is free again
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 2)
    assert carts.require(token).cart_items[0].qty == 2


def test_item_must_belong_to_cart(carts, token, shirt):
    other = mint_token()
    carts.create(other)
    carts.add_or_increment_item(other, shirt, "SIZE_MD", 1)
    foreign_item = carts.require(other).cart_items[0].id

    with pytest.raises(CartItemNotFoundError):
        carts.remove_item(token, foreign_item)
    with pytest.raises(CartItemNotFoundError):
        carts.set_item_qty(token, foreign_item, 5)
    assert carts.require(other).cart_items[0].qty == 1


@pytest.mark.parametrize("qty,expected", [(4, 4), (0, 1), (-3, 1), ("abc", 1), (None, 1), ("7", 7)])
def test_set_item_qty_coerces(carts, token, shirt, qty, expected):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 2)
    item_id = carts.require(token).cart_items[0].id

    carts.set_item_qty(token, item_id, qty)
    assert carts.require(token).cart_items[0].qty == expected


def test_update_cart_fields_clears_none(carts, token):
    carts.update_cart_fields(token, {"sales_tax": Decimal("1.5")})
    assert carts.require(token).sales_tax == Decimal("1.50")

    carts.update_cart_fields(token, {"closed_at": None})
    assert carts.require(token).closed_at is None


def test_checkout_transition_is_exclusive(carts, token):
    carts.begin_checkout(token)
    assert carts.require(token).status == CartStatus.CHARGING
    assert carts.get_active(token) is None

    with pytest.raises(CartNotActiveError):
        carts.begin_checkout(token)

    carts.release_checkout(token)
    assert carts.require(token).status == CartStatus.OPEN


def test_closed_cart_is_immutable(carts, token, shirt):
    carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)
    item_id = carts.require(token).cart_items[0].id
    carts.begin_checkout(token)
    closed_at = carts.close(token, BillingAddress(postal_code="94105"))

    cart = carts.require(token)
    assert cart.status == CartStatus.CLOSED
    assert cart.closed_at == closed_at
    assert cart.billing.postal_code == "94105"

    with pytest.raises(CartNotActiveError):
        carts.add_or_increment_item(token, shirt, "SIZE_MD", 1)
    with pytest.raises(CartNotActiveError):
        carts.set_item_qty(token, item_id, 3)
    with pytest.raises(CartNotActiveError):
        carts.remove_item(token, item_id)
    with pytest.raises(CartNotActiveError):
        carts.update_cart_fields(token, {"sales_tax": Decimal("9.99")})
    with pytest.raises(CartNotActiveError):
        carts.begin_checkout(token)


def test_close_requires_charging(carts, token):
    with pytest.raises(CartNotActiveError):
        carts.close(token)
    assert carts.require(token).closed_at is None


def test_closed_cart_does_not_expire(carts, token, redis_client):
    assert redis_client.client.ttl(f"cart:{token}") > 0
    carts.begin_checkout(token)
    carts.close(token)
    assert redis_client.client.ttl(f"cart:{token}") == -1
