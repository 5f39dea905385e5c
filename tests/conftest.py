from decimal import Decimal

import fakeredis
import pytest
from fastapi.testclient import TestClient

from storefront.config import Config
from storefront.main import create_app
from storefront.models import Product, ProductPic, ProductSize, ShippingAddress
from storefront.notifications import FakeEmailSender
from storefront.payment_gateway import FakePaymentGateway, FakePayPalGateway
from storefront.redis_client import RedisClient
from storefront.services import build_services
from storefront.shipping_gateway import FakeShippingGateway

SHIRT_ID = "0b9a4d0c-6a53-4d2e-9a43-2b3c2b1f3a01"
APRON_ID = "5f0e7c1e-2b4f-4d7a-8a9e-0c7f3d3a9b12"


@pytest.fixture(autouse=True)
def tax_rates(monkeypatch):
    monkeypatch.setattr(Config, "SALES_TAX_RATES", {"CA": "0.0725"})
    monkeypatch.setattr(Config, "SALES_TAX_POSTAL_RATES", {})


@pytest.fixture()
def redis_client():
    return RedisClient(client=fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True))


@pytest.fixture()
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture()
def paypal_gateway():
    return FakePayPalGateway()


@pytest.fixture()
def shipping_gateway():
    return FakeShippingGateway()


@pytest.fixture()
def email_sender():
    return FakeEmailSender()


@pytest.fixture()
def services(redis_client, payment_gateway, shipping_gateway, email_sender, paypal_gateway):
    services = build_services(
        redis_client=redis_client,
        payment_gateway=payment_gateway,
        shipping_gateway=shipping_gateway,
        email_sender=email_sender,
        paypal_gateway=paypal_gateway,
    )
    services.catalog.save(Product(
        id=SHIRT_ID,
        title="Linen Work Shirt",
        price=Decimal("20.00"),
        weight_oz=Decimal("8"),
        sizes=[
            ProductSize(id="s-md", size="SIZE_MD", inventory_count=10, sort=2),
            ProductSize(id="s-sm", size="SIZE_SM", inventory_count=5, sort=1),
            ProductSize(id="s-xl", size="SIZE_XL", inventory_count=3, is_visible=False, sort=3),
        ],
        pics=[
            ProductPic(id="p-2", url="https://cdn.example.com/shirt-back.jpg", sort_order=2),
            ProductPic(id="p-1", url="https://cdn.example.com/shirt-front.jpg", sort_order=1),
            ProductPic(id="p-3", url="https://cdn.example.com/shirt-draft.jpg", is_visible=False, sort_order=0),
        ],
    ))
    services.catalog.save(Product(
        id=APRON_ID,
        title="Canvas Apron",
        price=Decimal("35.50"),
        weight_oz=Decimal("12"),
        sizes=[ProductSize(id="a-os", size="SIZE_OS", inventory_count=4)],
    ))
    return services


@pytest.fixture()
def shipping_address():
    return ShippingAddress(
        first_name="Ada",
        last_name="Lovelace",
        street_address="1 Market St",
        city="San Francisco",
        state="CA",
        postal_code="94105",
        country_code_alpha2="US",
        email="ada@example.com",
    )


@pytest.fixture()
def shipping_payload():
    return {
        "shipping_firstName": "Ada",
        "shipping_lastName": "Lovelace",
        "shipping_streetAddress": "1 Market St",
        "shipping_city": "San Francisco",
        "shipping_state": "CA",
        "shipping_postalCode": "94105",
        "shipping_countryCodeAlpha2": "US",
        "shipping_email": "ada@example.com",
    }


@pytest.fixture()
def client(services):
    return TestClient(create_app(services))
