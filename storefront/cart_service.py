"""
Cart service for shopping cart operations.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from storefront.cart_repository import CartRepository
from storefront.cart_token import mint_token
from storefront.exceptions import ProductNotFoundError, ValidationError
from storefront.middleware import hash_identifier
from storefront.models import Cart, ShippingAddress, ShippingRate, to_money
from storefront.product_catalog import ProductCatalog
from storefront.shipping_gateway import ShippingGateway, get_lowest_shipping_rate
from storefront.tax import compute_sales_tax

logger = logging.getLogger(__name__)

TaxCalculator = Callable[[Decimal, ShippingAddress], Decimal]


class CartService:
    """Service for cart operations"""

    def __init__(
        self,
        cart_repository: CartRepository,
        catalog: ProductCatalog,
        shipping_gateway: ShippingGateway,
        tax_calculator: TaxCalculator = compute_sales_tax
    ):
        self.cart_repository = cart_repository
        self.catalog = catalog
        self.shipping_gateway = shipping_gateway
        self.tax_calculator = tax_calculator

    def get_or_create_active(self, token: Optional[str]) -> Tuple[str, Cart, bool]:
        """
        Resolve the active cart for a token.

        A missing, unknown or closed cart is replaced by a brand new one
        under a fresh token.

        Returns:
            (token, cart with relations, created)
        """
        if self.cart_repository.get_active(token) is not None:
            return token, self.cart_repository.require(token), False

        new_token = mint_token()
        self.cart_repository.create(new_token)
        logger.info("New cart issued", extra={"hashed_cart_id": hash_identifier(new_token)})
        return new_token, self.cart_repository.require(new_token), True

    def get_cart(self, token: str) -> Cart:
        return self.cart_repository.require(token)

    def _totals(self, cart: Cart, sales_tax: Optional[Decimal] = None,
                shipping_rate: Optional[ShippingRate] = None) -> Dict[str, Any]:
        """Totals patch for a cart, with an optional new tax or rate"""
        sub_total = cart.compute_sub_total()
        tax = to_money(cart.sales_tax if sales_tax is None else sales_tax)
        rate = shipping_rate or cart.shipping_rate
        shipping_total = to_money(rate.amount if rate else 0)
        return {
            "sub_total": sub_total,
            "sales_tax": tax,
            "shipping_total": shipping_total,
            "grand_total": to_money(sub_total + shipping_total + tax),
        }

    def _refresh_totals(self, token: str) -> Cart:
        """Recompute totals after the items changed; tax follows the new subtotal"""
        cart = self.cart_repository.require(token)
        sales_tax = None
        if cart.shipping is not None:
            sales_tax = self.tax_calculator(cart.compute_sub_total(), cart.shipping)
        self.cart_repository.update_cart_fields(token, self._totals(cart, sales_tax=sales_tax))
        return self.cart_repository.require(token)

    def add_item(self, token: Optional[str], product_id: str, size: Optional[str], qty: int) -> Tuple[str, Cart]:
        """
        Add a product to the cart, creating a new cart when the token has no
        open cart. Returns the token actually used and the fresh cart.
        """
        token, _, _ = self.get_or_create_active(token)

        product = self.catalog.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        self.cart_repository.add_or_increment_item(token, product, size, qty)
        logger.info(
            "Item added to cart",
            extra={"hashed_cart_id": hash_identifier(token), "product_id": product_id, "qty": qty}
        )
        return token, self._refresh_totals(token)

    def remove_item(self, token: str, item_id: str) -> Cart:
        self.cart_repository.remove_item(token, item_id)
        return self._refresh_totals(token)

    def set_item_qty(self, token: str, item_id: str, qty: Any) -> Cart:
        self.cart_repository.set_item_qty(token, item_id, qty)
        return self._refresh_totals(token)

    def set_shipping_address(self, token: str, address: ShippingAddress) -> Cart:
        """
        Store the shipping address, then recompute tax and the shipping rate.

        Tax and subtotal are saved first; the rate is quoted against the cart
        re-read with the new address and saved second.
        """
        cart = self.cart_repository.require(token)
        sales_tax = self.tax_calculator(cart.compute_sub_total(), address)
        self.cart_repository.update_cart_fields(
            token, {"shipping": address, **self._totals(cart, sales_tax=sales_tax)}
        )

        cart = self.cart_repository.require(token)
        rate = get_lowest_shipping_rate(self.shipping_gateway, cart)
        self.cart_repository.update_cart_fields(
            token, {"shipping_rate": rate, **self._totals(cart, shipping_rate=rate)}
        )
        return self.cart_repository.require(token)

    def get_shipping_rates(self, token: str) -> List[ShippingRate]:
        """All carrier quotes for the cart; carrier failures are surfaced here"""
        cart = self.cart_repository.require(token)
        if cart.shipping is None:
            raise ValidationError("Set a shipping address before requesting shipping rates")
        return self.shipping_gateway.quote_rates(cart)

    def set_shipping_rate(self, token: str, rate: ShippingRate) -> Cart:
        cart = self.cart_repository.require(token)
        self.cart_repository.update_cart_fields(
            token, {"shipping_rate": rate, **self._totals(cart, shipping_rate=rate)}
        )
        return self.cart_repository.require(token)
