"""
Admin operations on paid orders: carrier orders, packing slips and shipping labels.
"""
import logging
from typing import Any, Dict

from storefront.cart_repository import CartRepository
from storefront.exceptions import ValidationError
from storefront.models import Payment, PaymentDetail
from storefront.payment_repository import PaymentRepository
from storefront.shipping_gateway import ShippingGateway

logger = logging.getLogger(__name__)


class ShippingLabelService:
    """Buys and tracks shipping labels for payments"""

    def __init__(
        self,
        payment_repository: PaymentRepository,
        cart_repository: CartRepository,
        shipping_gateway: ShippingGateway
    ):
        self.payment_repository = payment_repository
        self.cart_repository = cart_repository
        self.shipping_gateway = shipping_gateway

    def _require_paid(self, payment_id: str) -> Payment:
        """Payment that was captured; declined attempts never ship"""
        payment = self.payment_repository.require(payment_id)
        if not payment.success:
            raise ValidationError("Payment was not successful")
        return payment

    def get_payment_detail(self, payment_id: str) -> PaymentDetail:
        payment = self.payment_repository.require(payment_id)
        cart = self.cart_repository.get_by_token(payment.cart_token)
        return PaymentDetail(**payment.model_dump(), cart=cart)

    def create_order(self, payment_id: str) -> Dict[str, Any]:
        """Create the carrier order for a payment once and remember its id"""
        payment = self._require_paid(payment_id)
        if payment.shipping_order_id:
            return {"object_id": payment.shipping_order_id}

        cart = self.cart_repository.require(payment.cart_token)
        order = self.shipping_gateway.create_order(cart)
        self.payment_repository.update_fields(payment_id, {"shipping_order_id": order["object_id"]})
        logger.info("Carrier order created", extra={"payment_id": payment_id, "order_id": order["object_id"]})
        return order

    def get_packing_slip(self, payment_id: str) -> Dict[str, Any]:
        """Packing slip for the payment's carrier order, creating the order first if needed"""
        order = self.create_order(payment_id)
        slip = self.shipping_gateway.get_packing_slip(order["object_id"])
        logger.info("Packing slip fetched", extra={"payment_id": payment_id, "order_id": order["object_id"]})
        return slip

    def purchase_label(self, payment_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Buy a label for the payment and store the carrier transaction id on it"""
        self._require_paid(payment_id)
        label = self.shipping_gateway.create_label(data)
        self.payment_repository.update_fields(
            payment_id, {"shipping_label_transaction_id": label["object_id"]}
        )
        logger.info("Shipping label purchased", extra={"payment_id": payment_id, "label_id": label["object_id"]})
        return label

    def get_label(self, transaction_id: str) -> Dict[str, Any]:
        return self.shipping_gateway.get_label(transaction_id)

    def clear_label(self, payment_id: str) -> Payment:
        """
        Forget the label bought for a payment so a new one can be purchased.
        The carrier has no way to delete the label itself.
        """
        return self.payment_repository.update_fields(payment_id, {"shipping_label_transaction_id": None})
