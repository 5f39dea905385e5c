"""
Cart repository: the only component that reads and writes carts and line items.
"""
import json
import time
import uuid
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from storefront.atomic_scripts import AtomicScripts
from storefront.config import Config
from storefront.exceptions import (
    CartItemNotFoundError,
    CartNotActiveError,
    CartNotFoundError,
    LimitExceededError,
    StorefrontError,
)
from storefront.models import (
    BillingAddress,
    Cart,
    CartItem,
    CartStatus,
    Product,
    ShippingAddress,
    ShippingRate,
    to_money,
)
from storefront.product_catalog import ProductCatalog
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)

MONEY_FIELDS = ("sub_total", "shipping_total", "sales_tax", "grand_total")
DATETIME_FIELDS = ("created_at", "closed_at", "purchase_confirmation_email_sent_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_value(value: Any) -> str:
    """Encode a cart field for a Redis hash. None encodes as '' (field removed)."""
    if value is None:
        return ""
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True, exclude_none=True)
    if isinstance(value, Decimal):
        return str(to_money(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class CartRepository:
    """Repository for carts and their line items"""

    def __init__(self, redis_client: RedisClient, catalog: ProductCatalog, ttl: Optional[int] = None):
        self.redis = redis_client
        self.catalog = catalog
        self.scripts = AtomicScripts(redis_client)
        self.ttl = ttl or Config.CART_TTL_SECONDS

    def _cart_key(self, token: str) -> str:
        return f"cart:{token}"

    def _items_key(self, token: str) -> str:
        return f"cart:{token}:items"

    def _variants_key(self, token: str) -> str:
        return f"cart:{token}:variants"

    def _keys(self, token: str) -> List[str]:
        return [self._cart_key(token), self._items_key(token), self._variants_key(token)]

    def _check(self, result: List[Any], token: str, item_id: Optional[str] = None) -> List[Any]:
        """Turn a script reply into a return value or the matching exception"""
        code = result[0] if result else None
        if code == "OK":
            return result
        if code == "CART_NOT_FOUND":
            raise CartNotFoundError(token)
        if code == "CART_NOT_ACTIVE":
            raise CartNotActiveError(token)
        if code == "ITEM_NOT_FOUND":
            raise CartItemNotFoundError(item_id or "")
        if code == "MAX_QUANTITY_EXCEEDED":
            raise LimitExceededError(f"Quantity exceeds maximum {result[1]}")
        if code == "MAX_ITEMS_EXCEEDED":
            raise LimitExceededError(f"Cart exceeds maximum items {result[1]}")
        raise StorefrontError(f"Unexpected cart script reply: {result}")

    def get_by_token(self, token: str, include_relations: bool = True) -> Optional[Cart]:
        """
        Fetch a cart by token.

        With include_relations the line items are loaded newest first, each
        with its product restricted to visible pictures and sizes in sort order.
        """
        data = self.redis.hgetall(self._cart_key(token))
        if not data:
            return None

        items: List[CartItem] = []
        if include_relations:
            items = self._load_items(token)

        return self._decode_cart(data, items)

    def get_active(self, token: Optional[str]) -> Optional[Cart]:
        """The cart for token if it exists and is still open, otherwise None"""
        if not token:
            return None
        cart = self.get_by_token(token, include_relations=False)
        if cart is None or not cart.is_open:
            return None
        return cart

    def require(self, token: str, include_relations: bool = True) -> Cart:
        cart = self.get_by_token(token, include_relations)
        if cart is None:
            raise CartNotFoundError(token)
        return cart

    def create(self, token: str) -> Cart:
        """Insert a new open cart"""
        now = utcnow()
        zero = Decimal("0.00")
        cart_key = self._cart_key(token)
        self.redis.hset(cart_key, {
            "token": token,
            "status": CartStatus.OPEN.value,
            "created_at": now.isoformat(),
            **{name: encode_value(zero) for name in MONEY_FIELDS},
        })
        self.redis.expire(cart_key, self.ttl)
        logger.info("Cart created", extra={"cart_created_at": now.isoformat()})
        return Cart(token=token, created_at=now)

    def add_or_increment_item(self, token: str, product: Product, size: Optional[str], qty: int) -> None:
        """
        Add a line item, or increment the quantity of the line item with the
        same (cart, product, variant) identity.
        """
        now = utcnow()
        result = self.scripts.add_or_increment_item(
            keys=self._keys(token),
            token=token,
            product_id=product.id,
            size=size,
            qty=qty,
            new_item_id=str(uuid.uuid4()),
            created_at=now.isoformat(),
            score=time.time(),
            max_items=Config.MAX_ITEMS_PER_CART,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=self.ttl,
        )
        self._check(result, token)

    def remove_item(self, token: str, item_id: str) -> None:
        result = self.scripts.remove_item(keys=self._keys(token), item_id=item_id)
        self._check(result, token, item_id)

    def set_item_qty(self, token: str, item_id: str, qty: Any) -> None:
        """Set an item quantity; anything below 1 or not a number becomes 1"""
        try:
            qty = int(qty)
        except (TypeError, ValueError):
            qty = 1
        qty = max(qty, 1)

        result = self.scripts.set_item_qty(
            keys=self._keys(token)[:2],
            item_id=item_id,
            qty=qty,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=self.ttl,
        )
        self._check(result, token, item_id)

    def update_cart_fields(self, token: str, patch: Dict[str, Any], require_open: bool = True) -> None:
        """
        Partial update of cart fields.

        With require_open the patch is only applied while the cart is open;
        the check and the write are atomic.
        """
        required_status = CartStatus.OPEN.value if require_open else ""
        fields = {name: encode_value(value) for name, value in patch.items()}
        result = self.scripts.update_cart_fields(self._cart_key(token), fields, required_status)
        self._check(result, token)

    def begin_checkout(self, token: str) -> None:
        """Atomically move an open cart to charging; fails if it is not open"""
        result = self.scripts.transition_status(
            self._cart_key(token), CartStatus.OPEN.value, CartStatus.CHARGING.value
        )
        if result and result[0] == "CART_NOT_ACTIVE":
            raise CartNotActiveError(token, "Cart is not active, checkout already completed or in progress")
        self._check(result, token)

    def release_checkout(self, token: str) -> None:
        """Return a charging cart to open after a declined or failed charge"""
        result = self.scripts.transition_status(
            self._cart_key(token), CartStatus.CHARGING.value, CartStatus.OPEN.value
        )
        self._check(result, token)

    def close(self, token: str, billing: Optional[BillingAddress] = None) -> datetime:
        """Close a charging cart, storing the billing fields. Closed carts never expire."""
        closed_at = utcnow()
        fields = {"billing": encode_value(billing)} if billing is not None else {}
        result = self.scripts.close_cart(self._keys(token), closed_at.isoformat(), fields)
        self._check(result, token)
        return closed_at

    def _load_items(self, token: str) -> List[CartItem]:
        items: List[CartItem] = []
        products: Dict[str, Optional[Product]] = {}

        for item_id in self.redis.zrevrange(self._items_key(token), 0, -1):
            data = self.redis.hgetall(f"cart_item:{item_id}")
            if not data:
                logger.warning("Dangling cart item reference", extra={"item_id": item_id})
                continue

            product_id = data["product_id"]
            if product_id not in products:
                product = self.catalog.get(product_id)
                products[product_id] = product.visible() if product else None

            items.append(CartItem(
                id=data["id"],
                cart_token=data["cart_token"],
                product_id=product_id,
                variants={"size": data.get("size") or None},
                qty=int(data["qty"]),
                created_at=datetime.fromisoformat(data["created_at"]),
                product=products[product_id],
            ))
        return items

    def _decode_cart(self, data: Dict[str, str], items: List[CartItem]) -> Cart:
        fields: Dict[str, Any] = {
            "token": data["token"],
            "status": CartStatus(data.get("status", CartStatus.OPEN.value)),
            "cart_items": items,
        }
        for name in MONEY_FIELDS:
            fields[name] = to_money(data.get(name) or 0)
        for name in DATETIME_FIELDS:
            if data.get(name):
                fields[name] = datetime.fromisoformat(data[name])
        if data.get("shipping"):
            fields["shipping"] = ShippingAddress.model_validate_json(data["shipping"])
        if data.get("billing"):
            fields["billing"] = BillingAddress.model_validate_json(data["billing"])
        if data.get("shipping_rate"):
            fields["shipping_rate"] = ShippingRate.model_validate_json(data["shipping_rate"])
        return Cart(**fields)
