"""
Configuration management for the storefront application.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront")
    REGION: str = os.getenv("REGION", "us-west-2")
    SITE_URL: str = os.getenv("SITE_URL", "http://localhost:8000")
    DOMAIN_NAME: str = os.getenv("DOMAIN_NAME", "storefront")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = os.getenv("REDIS_SSL", "false").lower() == "true"

    # Cart settings
    CART_COOKIE_NAME: str = os.getenv("CART_COOKIE_NAME", "cart_token")
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", str(30 * 24 * 60 * 60)))  # 30 days default
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "99"))
    CURRENCY: str = os.getenv("CURRENCY", "USD")

    # Sales tax rates by state, e.g. '{"CA": "0.0725", "NV": "0.0685"}'
    SALES_TAX_RATES: Dict[str, str] = json.loads(os.getenv("SALES_TAX_RATES", '{"CA": "0.0725"}'))
    # Postal code prefix overrides, e.g. '{"941": "0.08625"}'
    SALES_TAX_POSTAL_RATES: Dict[str, str] = json.loads(os.getenv("SALES_TAX_POSTAL_RATES", "{}"))

    # Payment gateway (Square)
    SQUARE_API_URL: str = os.getenv("SQUARE_API_URL", "https://connect.squareupsandbox.com")
    SQUARE_ACCESS_TOKEN: Optional[str] = os.getenv("SQUARE_ACCESS_TOKEN")
    SQUARE_LOCATION_ID: Optional[str] = os.getenv("SQUARE_LOCATION_ID")
    SQUARE_API_VERSION: str = os.getenv("SQUARE_API_VERSION", "2024-01-18")

    # Payment gateway (PayPal Orders API); optional second payment method
    PAYPAL_API_URL: str = os.getenv("PAYPAL_API_URL", "https://api-m.sandbox.paypal.com")
    PAYPAL_CLIENT_ID: Optional[str] = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET: Optional[str] = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_BRAND_NAME: str = os.getenv("PAYPAL_BRAND_NAME", os.getenv("DOMAIN_NAME", "storefront"))

    # Shipping gateway (Shippo)
    SHIPPO_API_URL: str = os.getenv("SHIPPO_API_URL", "https://api.goshippo.com")
    SHIPPO_API_TOKEN: Optional[str] = os.getenv("SHIPPO_API_TOKEN")
    SHIPPING_FROM_ADDRESS: Dict[str, str] = json.loads(os.getenv("SHIPPING_FROM_ADDRESS", "{}"))

    # Email (Mailgun)
    MAILGUN_API_URL: str = os.getenv("MAILGUN_API_URL", "https://api.mailgun.net/v3")
    MAILGUN_API_KEY: Optional[str] = os.getenv("MAILGUN_API_KEY")
    MAILGUN_DOMAIN: Optional[str] = os.getenv("MAILGUN_DOMAIN")
    EMAIL_INFO: str = os.getenv("EMAIL_INFO", "info@example.com")
    EMAIL_ADMIN: str = os.getenv("EMAIL_ADMIN", "admin@example.com")

    # In-memory payment, shipping and email adapters for local development only
    USE_FAKE_GATEWAYS: bool = os.getenv("USE_FAKE_GATEWAYS", "false").lower() == "true"

    # Outbound HTTP settings
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_MAX_RETRIES: int = int(os.getenv("REDIS_MAX_RETRIES", "3"))
    REDIS_INITIAL_BACKOFF: float = 0.1
    REDIS_MAX_BACKOFF: float = 2.0

    @classmethod
    def load_secrets(cls) -> None:
        """Load credentials from AWS Secrets Manager.

        Values already present in the environment win over the secret.
        """
        secret_name = os.getenv("STOREFRONT_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, rely on the environment

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])
        except Exception as e:
            logger.warning(f"Could not load secrets from Secrets Manager: {e}")
            return

        cls.REDIS_AUTH_TOKEN = cls.REDIS_AUTH_TOKEN or secret_data.get("redis_auth_token")
        if "redis_endpoint" in secret_data and not os.getenv("REDIS_HOST"):
            cls.REDIS_HOST = secret_data["redis_endpoint"]
        cls.SQUARE_ACCESS_TOKEN = cls.SQUARE_ACCESS_TOKEN or secret_data.get("square_access_token")
        cls.SQUARE_LOCATION_ID = cls.SQUARE_LOCATION_ID or secret_data.get("square_location_id")
        cls.PAYPAL_CLIENT_ID = cls.PAYPAL_CLIENT_ID or secret_data.get("paypal_client_id")
        cls.PAYPAL_CLIENT_SECRET = cls.PAYPAL_CLIENT_SECRET or secret_data.get("paypal_client_secret")
        cls.SHIPPO_API_TOKEN = cls.SHIPPO_API_TOKEN or secret_data.get("shippo_api_token")
        cls.MAILGUN_API_KEY = cls.MAILGUN_API_KEY or secret_data.get("mailgun_api_key")


# Load secrets at module import
Config.load_secrets()
