"""
Order dispatch after a capture attempt: payment records, post-checkout
hooks, closing the cart and the confirmation emails.
"""
import logging
from typing import Any, Callable, Iterable, List, Optional

from storefront.cart_repository import CartRepository, utcnow
from storefront.exceptions import StorefrontError
from storefront.middleware import hash_identifier
from storefront.models import PAYMENT_TYPE_CREDIT_CARD, BillingAddress, Cart, Payment
from storefront.notifications import PurchaseEmailService
from storefront.payment_repository import PaymentRepository
from storefront.product_catalog import ProductCatalog

logger = logging.getLogger(__name__)

# Called with the checked-out cart (items loaded) after a successful charge
PostCheckoutHook = Callable[[Cart], None]


class InventoryDecrementHook:
    """Decrements per-size inventory for every line item of a checked-out cart"""

    def __init__(self, catalog: ProductCatalog):
        self.catalog = catalog

    def __call__(self, cart: Cart) -> None:
        for item in cart.cart_items:
            size = item.variants.get("size")
            if not size:
                continue
            self.catalog.decrement_inventory(item.product_id, size, item.qty)


class OrderDispatcher:
    """Persists payments, runs post-checkout hooks, closes carts and sends emails"""

    def __init__(
        self,
        cart_repository: CartRepository,
        payment_repository: PaymentRepository,
        email_service: PurchaseEmailService,
        post_checkout_hooks: Optional[Iterable[PostCheckoutHook]] = None
    ):
        self.cart_repository = cart_repository
        self.payment_repository = payment_repository
        self.email_service = email_service
        self.post_checkout_hooks: List[PostCheckoutHook] = list(post_checkout_hooks or [])

    def record_payment(
        self,
        cart: Cart,
        success: bool,
        transaction: Any,
        payment_type: int = PAYMENT_TYPE_CREDIT_CARD
    ) -> Payment:
        """Persist the capture attempt, successful or not"""
        return self.payment_repository.create(cart.token, success, transaction, payment_type)

    def emit_checkout_success(self, cart: Cart) -> None:
        """Run every post-checkout hook; a failing hook does not stop the others"""
        for hook in self.post_checkout_hooks:
            try:
                hook(cart)
            except Exception as e:
                logger.error(
                    f"Post-checkout hook failed: {e}",
                    extra={"hook": getattr(hook, "__name__", type(hook).__name__),
                           "hashed_cart_id": hash_identifier(cart.token)},
                    exc_info=True
                )

    def close_cart(self, token: str, billing: Optional[BillingAddress]) -> None:
        """
        Mark the cart closed and store the billing fields.

        The charge has already gone through, so failures are logged only.
        """
        try:
            self.cart_repository.close(token, billing)
        except StorefrontError as e:
            logger.error(
                f"Unable to close cart after successful payment: {e}",
                extra={"hashed_cart_id": hash_identifier(token)},
                exc_info=True
            )

    def send_purchase_emails(self, token: str, payment_id: str) -> None:
        """
        Send the purchase emails and record when they went out.

        Runs after the checkout response; failures are logged and never raised.
        """
        try:
            cart = self.cart_repository.require(token)
            self.email_service.send_purchase_emails(cart, payment_id)
            self.cart_repository.update_cart_fields(
                token,
                {"purchase_confirmation_email_sent_at": utcnow()},
                require_open=False,
            )
        except Exception as e:
            logger.error(
                f"Unable to send email confirmation to user after successful purchase: {e}",
                extra={"hashed_cart_id": hash_identifier(token), "payment_id": payment_id},
                exc_info=True
            )
