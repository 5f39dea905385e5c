"""
Checkout orchestration.

States: OPEN -> CHARGING -> CHARGED -> CLOSED, or OPEN -> CHARGING -> DECLINED
(the cart goes back to open so the buyer can retry).
"""
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from storefront.cart_repository import CartRepository
from storefront.config import Config
from storefront.dispatcher import OrderDispatcher
from storefront.exceptions import (
    CartNotActiveError,
    CartTotalsMismatchError,
    ConfigurationError,
    PaymentError,
    ValidationError,
)
from storefront.middleware import hash_identifier
from storefront.models import (
    BillingAddress,
    Cart,
    CheckoutRequest,
    Payment,
    ShippingAddress,
    to_minor_units,
    to_money,
)
from storefront.payment_gateway import ChargeRequest, HostedPaymentGateway, PaymentGateway

logger = logging.getLogger(__name__)

# Schedules a call to run after the response is sent, e.g. BackgroundTasks.add_task
Scheduler = Callable[..., None]


class CheckoutState(str, Enum):
    OPEN = "open"
    CHARGING = "charging"
    CHARGED = "charged"
    CLOSED = "closed"
    DECLINED = "declined"


@dataclass
class CheckoutOutcome:
    state: CheckoutState
    payment: Payment
    cart_token: str


def billing_address_payload(billing: BillingAddress) -> Dict[str, Any]:
    return {
        "address_line_1": billing.street_address,
        "address_line_2": billing.extended_address,
        "locality": billing.city,
        "administrative_district_level_1": billing.state,
        "postal_code": billing.postal_code,
        "country": billing.country_code_alpha2,
        "first_name": billing.first_name,
        "last_name": billing.last_name,
        "organization": billing.company,
    }


def shipping_address_payload(shipping: ShippingAddress) -> Dict[str, Any]:
    return {
        "address_line_1": shipping.street_address,
        "address_line_2": shipping.extended_address,
        "locality": shipping.city,
        "administrative_district_level_1": shipping.state,
        "postal_code": shipping.postal_code,
        "country": shipping.country_code_alpha2,
        "first_name": shipping.first_name,
        "last_name": shipping.last_name,
        "organization": shipping.company,
    }


class CheckoutService:
    """Service for checkout operations"""

    def __init__(
        self,
        cart_repository: CartRepository,
        payment_gateway: PaymentGateway,
        dispatcher: OrderDispatcher,
        currency: Optional[str] = None,
        paypal_gateway: Optional[HostedPaymentGateway] = None
    ):
        self.cart_repository = cart_repository
        self.payment_gateway = payment_gateway
        self.paypal_gateway = paypal_gateway
        self.dispatcher = dispatcher
        self.currency = currency or Config.CURRENCY

    def _log_state(self, token: str, state: CheckoutState, **extra) -> None:
        logger.info(
            f"Checkout {state.value}",
            extra={"hashed_cart_id": hash_identifier(token), "checkout_state": state.value, **extra}
        )

    def _load_checkout_cart(self, token: Optional[str]) -> Cart:
        """Cart that satisfies the checkout preconditions: open, non-empty, shippable, consistent totals"""
        cart = self.cart_repository.get_by_token(token) if token else None
        if cart is None or not cart.is_open:
            raise CartNotActiveError(token)

        if not cart.cart_items:
            raise ValidationError("Cannot checkout an empty cart")
        if cart.shipping is None:
            raise ValidationError("A shipping address is required before checkout")

        computed = cart.compute_grand_total()
        if computed != to_money(cart.grand_total) or computed <= 0:
            raise CartTotalsMismatchError(cart.grand_total, computed)
        return cart

    def _require_paypal(self) -> HostedPaymentGateway:
        if self.paypal_gateway is None:
            raise ConfigurationError("PayPal is not configured")
        return self.paypal_gateway

    def create_paypal_order(self, token: Optional[str]) -> str:
        """Create a PayPal order for the cart's grand total; the buyer approves it before capture"""
        gateway = self._require_paypal()
        cart = self._load_checkout_cart(token)
        order_id = gateway.create_order(cart)
        logger.info(
            "PayPal order created",
            extra={"hashed_cart_id": hash_identifier(cart.token), "amount": str(cart.grand_total)}
        )
        return order_id

    def checkout_paypal(
        self,
        token: Optional[str],
        request: CheckoutRequest,
        schedule: Optional[Scheduler] = None
    ) -> CheckoutOutcome:
        """Capture an approved PayPal order; request.nonce carries the order id"""
        return self.checkout(token, request, schedule=schedule, gateway=self._require_paypal())

    def checkout(
        self,
        token: Optional[str],
        request: CheckoutRequest,
        schedule: Optional[Scheduler] = None,
        gateway: Optional[PaymentGateway] = None
    ) -> CheckoutOutcome:
        """
        Charge the cart's grand total and close the cart.

        Args:
            token: Cart token resolved from the request
            request: Client payment nonce plus billing fields
            schedule: Runs the confirmation emails after the response;
                without one they are sent before returning
            gateway: Gateway to charge; the card gateway by default

        Returns:
            CheckoutOutcome with the persisted payment

        Raises:
            CartNotActiveError: cart missing, closed or already checking out
            CartTotalsMismatchError: persisted grand total is stale
            PaymentError: gateway declined; cart stays open
        """
        gateway = gateway or self.payment_gateway
        cart = self._load_checkout_cart(token)
        token = cart.token

        # Atomic OPEN -> CHARGING; a concurrent checkout on this token fails here
        self.cart_repository.begin_checkout(token)
        self._log_state(token, CheckoutState.CHARGING, amount=str(cart.grand_total))

        billing = BillingAddress.model_validate(request.model_dump(exclude={"nonce"}))
        charge_request = ChargeRequest(
            idempotency_key=secrets.token_hex(32),
            amount=to_minor_units(cart.grand_total),
            currency=self.currency,
            source_id=request.nonce,
            billing_address=billing_address_payload(billing),
            shipping_address=shipping_address_payload(cart.shipping),
            buyer_email_address=cart.shipping.email,
        )

        try:
            result = gateway.charge(charge_request)
        except PaymentError as e:
            try:
                self.dispatcher.record_payment(
                    cart, success=False, transaction={"errors": e.errors, "message": e.message},
                    payment_type=gateway.payment_type
                )
            finally:
                self.cart_repository.release_checkout(token)
            self._log_state(token, CheckoutState.DECLINED)
            raise
        except Exception:
            self.cart_repository.release_checkout(token)
            raise

        payment = self.dispatcher.record_payment(
            cart, success=True, transaction=result.raw, payment_type=gateway.payment_type
        )
        self._log_state(token, CheckoutState.CHARGED, payment_id=payment.id)

        self.dispatcher.emit_checkout_success(cart)
        self.dispatcher.close_cart(token, billing)
        self._log_state(token, CheckoutState.CLOSED, payment_id=payment.id)

        if schedule is not None:
            schedule(self.dispatcher.send_purchase_emails, token, payment.id)
        else:
            self.dispatcher.send_purchase_emails(token, payment.id)

        return CheckoutOutcome(state=CheckoutState.CLOSED, payment=payment, cart_token=token)
