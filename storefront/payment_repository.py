"""
Payment repository: one record per capture attempt, kept for audit.
"""
import json
import uuid
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from storefront.cart_repository import encode_value, utcnow
from storefront.exceptions import PaymentNotFoundError
from storefront.models import PAYMENT_TYPE_CREDIT_CARD, Payment
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)

PAYMENTS_INDEX_KEY = "payments"


class PaymentRepository:
    """Repository for payment records"""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    def _payment_key(self, payment_id: str) -> str:
        return f"payment:{payment_id}"

    def create(
        self,
        cart_token: str,
        success: bool,
        transaction: Any,
        payment_type: int = PAYMENT_TYPE_CREDIT_CARD
    ) -> Payment:
        """Persist a payment attempt"""
        payment = Payment(
            id=str(uuid.uuid4()),
            cart_token=cart_token,
            payment_type=payment_type,
            success=success,
            transaction=transaction,
            created_at=utcnow(),
        )
        self.redis.hset(self._payment_key(payment.id), {
            "id": payment.id,
            "cart_token": cart_token,
            "payment_type": payment_type,
            "success": int(success),
            "transaction": json.dumps(transaction, default=str),
            "created_at": payment.created_at.isoformat(),
        })
        self.redis.zadd(PAYMENTS_INDEX_KEY, {payment.id: payment.created_at.timestamp()})

        logger.info(
            "Payment saved",
            extra={"payment_id": payment.id, "success": success, "payment_type": payment_type}
        )
        return payment

    def get(self, payment_id: str) -> Optional[Payment]:
        data = self.redis.hgetall(self._payment_key(payment_id))
        if not data:
            return None
        return self._decode(data)

    def require(self, payment_id: str) -> Payment:
        payment = self.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    def list(self, limit: int = 25, offset: int = 0) -> List[Payment]:
        """Payments, newest first"""
        ids = self.redis.zrevrange(PAYMENTS_INDEX_KEY, offset, offset + limit - 1)
        payments = []
        for payment_id in ids:
            payment = self.get(payment_id)
            if payment is not None:
                payments.append(payment)
        return payments

    def count(self) -> int:
        return self.redis.zcard(PAYMENTS_INDEX_KEY)

    def update_fields(self, payment_id: str, patch: Dict[str, Any]) -> Payment:
        """Patch shipping label / order ids on a payment. None clears a field."""
        self.require(payment_id)
        key = self._payment_key(payment_id)

        to_clear = [name for name, value in patch.items() if value is None]
        to_set = {name: encode_value(value) for name, value in patch.items() if value is not None}
        if to_clear:
            self.redis.hdel(key, *to_clear)
        if to_set:
            self.redis.hset(key, to_set)
        return self.require(payment_id)

    def _decode(self, data: Dict[str, str]) -> Payment:
        return Payment(
            id=data["id"],
            cart_token=data["cart_token"],
            payment_type=int(data.get("payment_type", PAYMENT_TYPE_CREDIT_CARD)),
            success=data.get("success") == "1",
            transaction=json.loads(data["transaction"]) if data.get("transaction") else None,
            shipping_label_transaction_id=data.get("shipping_label_transaction_id") or None,
            shipping_order_id=data.get("shipping_order_id") or None,
            created_at=datetime.fromisoformat(data["created_at"]),
        )
