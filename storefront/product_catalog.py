"""
Product catalog backed by Redis.

Products are stored as JSON documents; per-size inventory counts live in a
separate hash so they can be decremented atomically. The ``products`` sorted
set indexes every product by the time it was last saved.
"""
import time
import logging
from typing import List, Optional

from storefront.exceptions import ProductNotFoundError
from storefront.models import Product
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)

PRODUCTS_INDEX_KEY = "products"


class ProductCatalog:
    """Product documents for the cart and the admin routes, plus inventory bookkeeping"""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    def _product_key(self, product_id: str) -> str:
        return f"product:{product_id}"

    def _inventory_key(self, product_id: str) -> str:
        return f"product:{product_id}:inventory"

    def get(self, product_id: str) -> Optional[Product]:
        """Fetch a product with its live inventory counts"""
        raw = self.redis.get(self._product_key(product_id))
        if raw is None:
            return None

        product = Product.model_validate_json(raw)
        inventory = self.redis.hgetall(self._inventory_key(product_id))
        for size in product.sizes:
            if size.size in inventory:
                size.inventory_count = int(inventory[size.size])
        return product

    def require(self, product_id: str) -> Product:
        product = self.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def list(self, limit: int = 25, offset: int = 0) -> List[Product]:
        """Products, most recently saved first"""
        ids = self.redis.zrevrange(PRODUCTS_INDEX_KEY, offset, offset + limit - 1)
        products = []
        for product_id in ids:
            product = self.get(product_id)
            if product is not None:
                products.append(product)
        return products

    def count(self) -> int:
        return self.redis.zcard(PRODUCTS_INDEX_KEY)

    def save(self, product: Product) -> Product:
        """Insert or replace a product and reset its inventory counts"""
        self.redis.set(self._product_key(product.id), product.model_dump_json())
        self.redis.delete(self._inventory_key(product.id))
        if product.sizes:
            self.redis.hset(
                self._inventory_key(product.id),
                {size.size: size.inventory_count for size in product.sizes},
            )
        self.redis.zadd(PRODUCTS_INDEX_KEY, {product.id: time.time()})
        logger.info("Product saved", extra={"product_id": product.id})
        return product

    def delete(self, product_id: str) -> None:
        """Remove a product, its inventory and its index entry"""
        self.require(product_id)
        self.redis.delete(self._product_key(product_id), self._inventory_key(product_id))
        self.redis.zrem(PRODUCTS_INDEX_KEY, product_id)
        logger.info("Product deleted", extra={"product_id": product_id})

    def decrement_inventory(self, product_id: str, size: str, qty: int) -> int:
        """Decrement the inventory count of one size and return the new count"""
        remaining = self.redis.hincrby(self._inventory_key(product_id), size, -qty)
        if remaining < 0:
            logger.warning(
                "Inventory oversold",
                extra={"product_id": product_id, "size": size, "remaining": remaining}
            )
        return remaining
