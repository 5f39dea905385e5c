"""
Service wiring. Everything the routes need is built here and passed in
explicitly; nothing is held in module globals.

Adapters for payments, shipping and email come from the configured
credentials. Missing credentials are a startup error unless
USE_FAKE_GATEWAYS is set, which swaps in the in-memory fakes for local
development. PayPal is optional: without credentials its routes answer 503.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from storefront.cart_repository import CartRepository
from storefront.cart_service import CartService
from storefront.checkout_service import CheckoutService
from storefront.config import Config
from storefront.dispatcher import InventoryDecrementHook, OrderDispatcher
from storefront.exceptions import ConfigurationError
from storefront.notifications import EmailSender, FakeEmailSender, MailgunEmailSender, PurchaseEmailService
from storefront.payment_gateway import (
    FakePaymentGateway,
    FakePayPalGateway,
    HostedPaymentGateway,
    PaymentGateway,
    PayPalGateway,
    SquareGateway,
)
from storefront.payment_repository import PaymentRepository
from storefront.product_catalog import ProductCatalog
from storefront.redis_client import RedisClient
from storefront.shipping_gateway import FakeShippingGateway, ShippingGateway, ShippoGateway
from storefront.shipping_labels import ShippingLabelService
from storefront.tax import SalesTaxCalculator
from storefront.tax_repository import TaxRateRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    redis: RedisClient
    catalog: ProductCatalog
    carts: CartRepository
    payments: PaymentRepository
    tax_rates: TaxRateRepository
    cart_service: CartService
    checkout_service: CheckoutService
    dispatcher: OrderDispatcher
    labels: ShippingLabelService


def _missing(setting: str, adapter: str) -> None:
    """Fail unless fakes are allowed, in which case warn"""
    if not Config.USE_FAKE_GATEWAYS:
        raise ConfigurationError(f"{setting} is not set; set USE_FAKE_GATEWAYS=true to use the fake {adapter}")
    logger.warning(f"{setting} not set, using the fake {adapter}")


def default_payment_gateway() -> PaymentGateway:
    if Config.SQUARE_ACCESS_TOKEN:
        return SquareGateway(Config.SQUARE_ACCESS_TOKEN, Config.SQUARE_LOCATION_ID)
    _missing("SQUARE_ACCESS_TOKEN", "payment gateway")
    return FakePaymentGateway()


def default_paypal_gateway() -> Optional[HostedPaymentGateway]:
    if Config.PAYPAL_CLIENT_ID and Config.PAYPAL_CLIENT_SECRET:
        return PayPalGateway(Config.PAYPAL_CLIENT_ID, Config.PAYPAL_CLIENT_SECRET)
    if Config.USE_FAKE_GATEWAYS:
        logger.warning("PayPal credentials not set, using the fake PayPal gateway")
        return FakePayPalGateway()
    logger.info("PayPal credentials not set, PayPal checkout is disabled")
    return None


def default_shipping_gateway() -> ShippingGateway:
    if Config.SHIPPO_API_TOKEN:
        return ShippoGateway(Config.SHIPPO_API_TOKEN)
    _missing("SHIPPO_API_TOKEN", "shipping gateway")
    return FakeShippingGateway()


def default_email_sender() -> EmailSender:
    if Config.MAILGUN_API_KEY and Config.MAILGUN_DOMAIN:
        return MailgunEmailSender(Config.MAILGUN_API_KEY, Config.MAILGUN_DOMAIN)
    _missing("MAILGUN_API_KEY/MAILGUN_DOMAIN", "email sender")
    return FakeEmailSender()


def build_services(
    redis_client: Optional[RedisClient] = None,
    payment_gateway: Optional[PaymentGateway] = None,
    shipping_gateway: Optional[ShippingGateway] = None,
    email_sender: Optional[EmailSender] = None,
    paypal_gateway: Optional[HostedPaymentGateway] = None
) -> Services:
    """
    Build the service graph, using configured adapters for anything not passed in.

    Raises:
        ConfigurationError: a required adapter has no credentials and fakes are not allowed
    """
    payment_gateway = payment_gateway or default_payment_gateway()
    shipping_gateway = shipping_gateway or default_shipping_gateway()
    email_sender = email_sender or default_email_sender()
    paypal_gateway = paypal_gateway or default_paypal_gateway()
    redis_client = redis_client or RedisClient()

    catalog = ProductCatalog(redis_client)
    carts = CartRepository(redis_client, catalog)
    payments = PaymentRepository(redis_client)
    tax_rates = TaxRateRepository(redis_client)

    dispatcher = OrderDispatcher(
        cart_repository=carts,
        payment_repository=payments,
        email_service=PurchaseEmailService(email_sender),
        post_checkout_hooks=[InventoryDecrementHook(catalog)],
    )

    return Services(
        redis=redis_client,
        catalog=catalog,
        carts=carts,
        payments=payments,
        tax_rates=tax_rates,
        cart_service=CartService(carts, catalog, shipping_gateway, tax_calculator=SalesTaxCalculator(tax_rates)),
        checkout_service=CheckoutService(carts, payment_gateway, dispatcher, paypal_gateway=paypal_gateway),
        dispatcher=dispatcher,
        labels=ShippingLabelService(payments, carts, shipping_gateway),
    )
