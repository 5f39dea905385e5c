import json

import pytest

from storefront import config
from storefront.config import Config


class FakeSecretsManager:
    def __init__(self, secret):
        self.secret = secret

    def get_secret_value(self, SecretId):
        return {"SecretString": json.dumps(self.secret)}


@pytest.fixture()
def clean_config(monkeypatch):
    for name in ("SQUARE_ACCESS_TOKEN", "SHIPPO_API_TOKEN", "MAILGUN_API_KEY", "REDIS_AUTH_TOKEN",
                 "PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"):
        monkeypatch.setattr(Config, name, None)
    monkeypatch.setenv("STOREFRONT_SECRET_NAME", "storefront/prod")


def test_secrets_fill_missing_credentials(monkeypatch, clean_config):
    secret = {"square_access_token": "sq-secret", "shippo_api_token": "shippo-secret"}
    monkeypatch.setattr(config.boto3, "client", lambda service, region_name=None: FakeSecretsManager(secret))

    Config.load_secrets()

    assert Config.SQUARE_ACCESS_TOKEN == "sq-secret"
    assert Config.SHIPPO_API_TOKEN == "shippo-secret"
    assert Config.MAILGUN_API_KEY is None


def test_secrets_fill_paypal_credentials(monkeypatch, clean_config):
    secret = {"paypal_client_id": "pp-client", "paypal_client_secret": "pp-secret"}
    monkeypatch.setattr(config.boto3, "client", lambda service, region_name=None: FakeSecretsManager(secret))

    Config.load_secrets()

    assert Config.PAYPAL_CLIENT_ID == "pp-client"
    assert Config.PAYPAL_CLIENT_SECRET == "pp-secret"


def test_environment_wins_over_secret(monkeypatch, clean_config):
    monkeypatch.setattr(Config, "SQUARE_ACCESS_TOKEN", "sq-from-env")
    secret = {"square_access_token": "sq-secret"}
    monkeypatch.setattr(config.boto3, "client", lambda service, region_name=None: FakeSecretsManager(secret))

    Config.load_secrets()

    assert Config.SQUARE_ACCESS_TOKEN == "sq-from-env"


def test_unreachable_secrets_manager_is_not_fatal(monkeypatch, clean_config):
    def broken_client(service, region_name=None):
        raise RuntimeError("no credentials")

    monkeypatch.setattr(config.boto3, "client", broken_client)

    Config.load_secrets()

    assert Config.SQUARE_ACCESS_TOKEN is None
