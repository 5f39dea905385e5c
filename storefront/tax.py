"""
Sales tax calculation.

Rates are looked up locally from the stored tax rates. Only rates for the
address's country apply, and the most specific one wins: the longest
matching postal code prefix, then the state, then a country-wide rate.
Addresses outside the taxable countries are not taxed. The result depends
only on the inputs, so it can be recomputed whenever the address changes.
"""
from decimal import Decimal
from typing import Iterable, List, Optional

from storefront.config import Config
from storefront.models import ShippingAddress, TaxRate, to_money
from storefront.tax_repository import TaxRateRepository

TAXABLE_COUNTRIES = ("US",)


def default_tax_rates() -> List[TaxRate]:
    """Rates from the SALES_TAX_RATES / SALES_TAX_POSTAL_RATES settings"""
    rates = [
        TaxRate(id=f"state-{state}", name=f"{state} sales tax", state=state, rate=Decimal(str(rate)))
        for state, rate in Config.SALES_TAX_RATES.items()
    ]
    rates.extend(
        TaxRate(id=f"postal-{prefix}", name=f"{prefix} sales tax", postal_code_prefix=prefix,
                rate=Decimal(str(rate)))
        for prefix, rate in Config.SALES_TAX_POSTAL_RATES.items()
    )
    return rates


def _matches(tax_rate: TaxRate, address: ShippingAddress) -> bool:
    if tax_rate.country_code_alpha2 != address.country_code_alpha2.upper():
        return False
    if tax_rate.state and tax_rate.state != address.state.strip().upper():
        return False
    if tax_rate.postal_code_prefix and not address.postal_code.strip().startswith(tax_rate.postal_code_prefix):
        return False
    return True


def _specificity(tax_rate: TaxRate) -> tuple:
    return (len(tax_rate.postal_code_prefix or ""), 1 if tax_rate.state else 0)


def get_sales_tax_rate(address: ShippingAddress, rates: Iterable[TaxRate]) -> Decimal:
    """Tax rate that applies to a shipping address"""
    if address.country_code_alpha2.upper() not in TAXABLE_COUNTRIES:
        return Decimal("0")

    matching = [r for r in rates if _matches(r, address)]
    if not matching:
        return Decimal("0")
    return max(matching, key=_specificity).rate


def compute_sales_tax(
    sub_total: Decimal,
    address: ShippingAddress,
    rates: Optional[Iterable[TaxRate]] = None
) -> Decimal:
    """Sales tax owed on a subtotal shipped to an address, rounded half up to cents"""
    rate = get_sales_tax_rate(address, default_tax_rates() if rates is None else rates)
    return to_money(to_money(sub_total) * rate)


class SalesTaxCalculator:
    """
    Computes sales tax from the stored rates. Until any rate has been stored
    the configured defaults apply.
    """

    def __init__(self, repository: TaxRateRepository):
        self.repository = repository

    def rates(self) -> List[TaxRate]:
        return self.repository.list() or default_tax_rates()

    def __call__(self, sub_total: Decimal, address: ShippingAddress) -> Decimal:
        return compute_sales_tax(sub_total, address, self.rates())
