"""
Pydantic models for the catalog, carts, payments, requests, and responses.
"""
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

CENTS = Decimal("0.01")

PAYMENT_TYPE_CREDIT_CARD = 1
PAYMENT_TYPE_PAYPAL = 2


def to_money(value: Any) -> Decimal:
    """Round a numeric value to two decimal places (half up)"""
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(value: Any) -> int:
    """Convert a money amount into minor currency units (cents)"""
    return int(to_money(value) * 100)


# Catalog

class ProductSize(BaseModel):
    """Size option of a product, with its own inventory count"""
    id: str
    size: str = Field(..., description="Size code, e.g. SIZE_SM")
    inventory_count: int = 0
    is_visible: bool = True
    sort: int = 0


class ProductPic(BaseModel):
    """Product picture"""
    id: str
    url: str
    is_visible: bool = True
    sort_order: int = 0


class Product(BaseModel):
    """Catalog product as seen by the cart"""
    id: str = Field(..., description="Product identifier")
    title: str
    description_short: Optional[str] = None
    price: Decimal = Field(..., ge=0, description="Display price")
    weight_oz: Decimal = Field(Decimal("0"), ge=0)
    sizes: List[ProductSize] = Field(default_factory=list)
    pics: List[ProductPic] = Field(default_factory=list)

    def visible(self) -> "Product":
        """Copy of the product with only visible sizes and pictures, in sort order"""
        return self.model_copy(update={
            "sizes": sorted((s for s in self.sizes if s.is_visible), key=lambda s: s.sort),
            "pics": sorted((p for p in self.pics if p.is_visible), key=lambda p: p.sort_order),
        })


# Addresses

class ShippingAddress(BaseModel):
    """Shipping address, accepted in the flat ``shipping_*`` wire format"""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    first_name: str = Field(..., alias="shipping_firstName", min_length=1, max_length=255)
    last_name: str = Field(..., alias="shipping_lastName", min_length=1, max_length=255)
    company: Optional[str] = Field(None, alias="shipping_company", max_length=255)
    street_address: str = Field(..., alias="shipping_streetAddress", min_length=1, max_length=255)
    extended_address: Optional[str] = Field(None, alias="shipping_extendedAddress", max_length=255)
    city: str = Field(..., alias="shipping_city", min_length=1, max_length=255)
    state: str = Field(..., alias="shipping_state", min_length=1, max_length=255)
    postal_code: str = Field(..., alias="shipping_postalCode", min_length=1, max_length=10)
    country_code_alpha2: str = Field(..., alias="shipping_countryCodeAlpha2", min_length=2, max_length=2)
    email: str = Field(..., alias="shipping_email", max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @field_validator("country_code_alpha2")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return v.upper()

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class BillingAddress(BaseModel):
    """Billing address, accepted in the flat ``billing_*`` wire format"""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    first_name: Optional[str] = Field(None, alias="billing_firstName", max_length=255)
    last_name: Optional[str] = Field(None, alias="billing_lastName", max_length=255)
    company: Optional[str] = Field(None, alias="billing_company", max_length=255)
    street_address: Optional[str] = Field(None, alias="billing_streetAddress", max_length=255)
    extended_address: Optional[str] = Field(None, alias="billing_extendedAddress", max_length=255)
    city: Optional[str] = Field(None, alias="billing_city", max_length=255)
    state: Optional[str] = Field(None, alias="billing_state", max_length=255)
    postal_code: Optional[str] = Field(None, alias="billing_postalCode", max_length=10)
    country_code_alpha2: Optional[str] = Field(None, alias="billing_countryCodeAlpha2", max_length=2)
    phone: Optional[str] = Field(None, alias="billing_phone", max_length=30)


# Shipping rates

class ShippingServiceLevel(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    token: Optional[str] = None


class ShippingRate(BaseModel):
    """Carrier rate quote. Unknown carrier keys are kept as received."""
    model_config = ConfigDict(extra="allow")

    amount: Decimal = Field(..., ge=0)
    currency: str = "USD"
    provider: str
    servicelevel: ShippingServiceLevel
    estimated_days: Optional[int] = None
    object_id: Optional[str] = None
    provider_image_75: Optional[str] = None
    provider_image_200: Optional[str] = None


# Carts

class CartStatus(str, Enum):
    OPEN = "open"
    CHARGING = "charging"
    CLOSED = "closed"


class CartItem(BaseModel):
    """Line item: a (product, variant, quantity) entry within a cart"""
    id: str
    cart_token: str
    product_id: str
    variants: Dict[str, Optional[str]] = Field(default_factory=dict)
    qty: int = Field(..., ge=1)
    created_at: datetime
    product: Optional[Product] = None

    @computed_field
    @property
    def total_item_price(self) -> Decimal:
        if self.product is None:
            return to_money(0)
        return to_money(self.product.price * self.qty)


class Cart(BaseModel):
    """Shopping cart aggregate identified by an opaque token"""
    token: str
    status: CartStatus = CartStatus.OPEN
    shipping: Optional[ShippingAddress] = None
    billing: Optional[BillingAddress] = None
    shipping_rate: Optional[ShippingRate] = None
    sub_total: Decimal = Decimal("0.00")
    shipping_total: Decimal = Decimal("0.00")
    sales_tax: Decimal = Decimal("0.00")
    grand_total: Decimal = Decimal("0.00")
    cart_items: List[CartItem] = Field(default_factory=list)
    created_at: datetime
    closed_at: Optional[datetime] = None
    purchase_confirmation_email_sent_at: Optional[datetime] = None

    @computed_field
    @property
    def num_items(self) -> int:
        return sum(item.qty for item in self.cart_items)

    @property
    def is_open(self) -> bool:
        return self.status == CartStatus.OPEN and self.closed_at is None

    def compute_sub_total(self) -> Decimal:
        """Sum of line totals at current product prices"""
        return to_money(sum((item.total_item_price for item in self.cart_items), Decimal("0")))

    def compute_shipping_total(self) -> Decimal:
        return to_money(self.shipping_rate.amount if self.shipping_rate else 0)

    def compute_grand_total(self) -> Decimal:
        """Grand total from the current items, the selected rate and the stored tax"""
        return to_money(self.compute_sub_total() + self.compute_shipping_total() + to_money(self.sales_tax))


# Sales tax

class TaxRate(BaseModel):
    """
    Sales tax rate for a country, optionally narrowed to a state and a
    postal code prefix.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1, max_length=255)
    country_code_alpha2: str = Field("US", min_length=2, max_length=2)
    state: Optional[str] = Field(None, max_length=255)
    postal_code_prefix: Optional[str] = Field(None, max_length=10)
    rate: Decimal = Field(..., ge=0, le=1, description="Fraction of the subtotal, e.g. 0.0725")

    @field_validator("country_code_alpha2", "state")
    @classmethod
    def upper_codes(cls, v: Optional[str]) -> Optional[str]:
        v = v.strip().upper() if v else None
        return v or None

    @field_validator("postal_code_prefix")
    @classmethod
    def strip_prefix(cls, v: Optional[str]) -> Optional[str]:
        v = v.strip() if v else None
        return v or None


# Payments

class Payment(BaseModel):
    """Record of one capture attempt, successful or not"""
    id: str
    cart_token: str
    payment_type: int = PAYMENT_TYPE_CREDIT_CARD
    success: bool
    transaction: Any = None
    shipping_label_transaction_id: Optional[str] = None
    shipping_order_id: Optional[str] = None
    created_at: datetime


class PaymentDetail(Payment):
    """Payment together with the cart it paid for"""
    cart: Optional[Cart] = None


# Requests

class AddItemOptions(BaseModel):
    size: Optional[str] = Field(None, min_length=6, description="Variant selector, e.g. SIZE_SM")
    qty: int = Field(..., ge=1)

    @field_validator("size")
    @classmethod
    def upper_size(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class AddItemRequest(BaseModel):
    """Request model for adding a product to the cart"""
    id: str = Field(..., description="Product identifier")
    options: AddItemOptions

    @field_validator("id")
    @classmethod
    def product_uuid(cls, v: str) -> str:
        # Any UUID version, normalised to the canonical lowercase form
        return str(uuid.UUID(v))


class ItemIdRequest(BaseModel):
    id: str = Field(..., description="Cart item identifier")


class ItemQtyRequest(BaseModel):
    """Request model for setting a line item quantity"""
    id: str = Field(..., description="Cart item identifier")
    qty: Optional[Any] = None

    @field_validator("qty")
    @classmethod
    def coerce_qty(cls, v: Any) -> int:
        # Anything that isn't a positive integer becomes 1
        try:
            qty = int(v)
        except (TypeError, ValueError):
            return 1
        return qty if qty >= 1 else 1


class CheckoutRequest(BillingAddress):
    """Request model for checkout: the client payment nonce plus billing fields"""
    nonce: str = Field(..., min_length=1, description="Client supplied payment source token")


class ShippingLabelRequest(BaseModel):
    """Request model for buying a shipping label for a payment"""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Payment identifier")
    rate: str = Field(..., description="Carrier rate object id")
    label_file_type: str = "PDF"


class PaymentIdRequest(BaseModel):
    id: str = Field(..., description="Payment identifier")


# Responses

class CheckoutResponse(BaseModel):
    """Response model for checkout"""
    transactionId: str = Field(..., description="Identifier of the persisted payment")


class PaymentListResponse(BaseModel):
    data: List[Payment]
    total: int
    limit: int
    offset: int


class ProductListResponse(BaseModel):
    data: List[Product]
    total: int
    limit: int
    offset: int


class TaxRateListResponse(BaseModel):
    data: List[TaxRate]


class PayPalOrderResponse(BaseModel):
    """Response model for creating a PayPal order"""
    paymentToken: str = Field(..., description="PayPal order id the buyer approves")


class PayPalExecuteRequest(BillingAddress):
    """Request model for capturing an approved PayPal order, plus billing fields"""
    paymentToken: str = Field(..., min_length=1, description="Approved PayPal order id")
