import pytest

from storefront.config import Config
from storefront.exceptions import ConfigurationError
from storefront.notifications import FakeEmailSender, MailgunEmailSender
from storefront.payment_gateway import FakePaymentGateway, FakePayPalGateway, PayPalGateway, SquareGateway
from storefront.services import (
    build_services,
    default_email_sender,
    default_payment_gateway,
    default_paypal_gateway,
    default_shipping_gateway,
)
from storefront.shipping_gateway import FakeShippingGateway, ShippoGateway

CREDENTIALS = (
    "SQUARE_ACCESS_TOKEN",
    "SHIPPO_API_TOKEN",
    "MAILGUN_API_KEY",
    "MAILGUN_DOMAIN",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
)


@pytest.fixture()
def no_credentials(monkeypatch):
    for name in CREDENTIALS:
        monkeypatch.setattr(Config, name, None)
    monkeypatch.setattr(Config, "USE_FAKE_GATEWAYS", False)


@pytest.fixture()
def fakes_allowed(no_credentials, monkeypatch):
    monkeypatch.setattr(Config, "USE_FAKE_GATEWAYS", True)


@pytest.mark.parametrize("factory", [default_payment_gateway, default_shipping_gateway, default_email_sender])
def test_missing_credentials_fail(no_credentials, factory):
    with pytest.raises(ConfigurationError, match="USE_FAKE_GATEWAYS"):
        factory()


def test_build_services_fails_without_payment_credentials(no_credentials, redis_client):
    with pytest.raises(ConfigurationError, match="SQUARE_ACCESS_TOKEN"):
        build_services(
            redis_client=redis_client,
            shipping_gateway=FakeShippingGateway(),
            email_sender=FakeEmailSender(),
        )


def test_explicit_adapters_need_no_credentials(no_credentials, redis_client):
    payment_gateway = FakePaymentGateway()
    services = build_services(
        redis_client=redis_client,
        payment_gateway=payment_gateway,
        shipping_gateway=FakeShippingGateway(),
        email_sender=FakeEmailSender(),
    )

    assert services.checkout_service.payment_gateway is payment_gateway
    assert services.checkout_service.paypal_gateway is None


def test_fakes_when_allowed(fakes_allowed):
    assert isinstance(default_payment_gateway(), FakePaymentGateway)
    assert isinstance(default_shipping_gateway(), FakeShippingGateway)
    assert isinstance(default_email_sender(), FakeEmailSender)
    assert isinstance(default_paypal_gateway(), FakePayPalGateway)


def test_paypal_is_optional(no_credentials):
    assert default_paypal_gateway() is None


def test_real_adapters_when_configured(no_credentials, monkeypatch):
    monkeypatch.setattr(Config, "SQUARE_ACCESS_TOKEN", "sq-token")
    monkeypatch.setattr(Config, "SHIPPO_API_TOKEN", "shippo-token")
    monkeypatch.setattr(Config, "MAILGUN_API_KEY", "mg-key")
    monkeypatch.setattr(Config, "MAILGUN_DOMAIN", "mg.example.com")
    monkeypatch.setattr(Config, "PAYPAL_CLIENT_ID", "pp-client")
    monkeypatch.setattr(Config, "PAYPAL_CLIENT_SECRET", "pp-secret")

    assert isinstance(default_payment_gateway(), SquareGateway)
    assert isinstance(default_shipping_gateway(), ShippoGateway)
    assert isinstance(default_email_sender(), MailgunEmailSender)
    assert isinstance(default_paypal_gateway(), PayPalGateway)


def test_mailgun_needs_a_domain(no_credentials, monkeypatch):
    monkeypatch.setattr(Config, "MAILGUN_API_KEY", "mg-key")
    with pytest.raises(ConfigurationError):
        default_email_sender()
