"""
Tax rate repository. Rates are JSON documents in the ``tax_rates`` hash,
keyed by rate id.
"""
import logging
from typing import List, Optional

from storefront.exceptions import TaxRateNotFoundError
from storefront.models import TaxRate
from storefront.redis_client import RedisClient

logger = logging.getLogger(__name__)

TAX_RATES_KEY = "tax_rates"


class TaxRateRepository:
    """Repository for sales tax rates"""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    def list(self) -> List[TaxRate]:
        """All rates, ordered by country, state and postal prefix"""
        rates = [TaxRate.model_validate_json(raw) for raw in self.redis.hgetall(TAX_RATES_KEY).values()]
        return sorted(
            rates,
            key=lambda r: (r.country_code_alpha2, r.state or "", r.postal_code_prefix or "", r.name)
        )

    def get(self, tax_rate_id: str) -> Optional[TaxRate]:
        raw = self.redis.hget(TAX_RATES_KEY, tax_rate_id)
        if raw is None:
            return None
        return TaxRate.model_validate_json(raw)

    def require(self, tax_rate_id: str) -> TaxRate:
        tax_rate = self.get(tax_rate_id)
        if tax_rate is None:
            raise TaxRateNotFoundError(tax_rate_id)
        return tax_rate

    def save(self, tax_rate: TaxRate) -> TaxRate:
        """Insert or replace a rate"""
        self.redis.hset(TAX_RATES_KEY, {tax_rate.id: tax_rate.model_dump_json()})
        logger.info(
            "Tax rate saved",
            extra={"tax_rate_id": tax_rate.id, "country": tax_rate.country_code_alpha2, "state": tax_rate.state}
        )
        return tax_rate

    def update(self, tax_rate: TaxRate) -> TaxRate:
        """Replace an existing rate"""
        self.require(tax_rate.id)
        return self.save(tax_rate)

    def delete(self, tax_rate_id: str) -> None:
        self.require(tax_rate_id)
        self.redis.hdel(TAX_RATES_KEY, tax_rate_id)
        logger.info("Tax rate deleted", extra={"tax_rate_id": tax_rate_id})
