# bloom/domain/schemas.py
import re
from pydantic import AfterValidator, BaseModel, Field, ConfigDict, field_validator
from typing import Annotated, List, Optional
from decimal import Decimal
from datetime import date, datetime

ZIP_RE = re.compile(r"[0-9]{5}")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

US_STATES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY", "DC",
}


def _zip(value: str) -> str:
    if not ZIP_RE.fullmatch(value):
        raise ValueError("ZIP code must be exactly 5 digits")
    return value


def _phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) < 10 or len(digits) > 11:
        raise ValueError("Phone must be a valid US phone number")
    return digits


def _state(value: str) -> str:
    value = value.strip().upper()
    if value not in US_STATES:
        raise ValueError("Invalid state abbreviation")
    return value


ZipCode = Annotated[str, AfterValidator(_zip)]
Phone = Annotated[str, AfterValidator(_phone)]
StateCode = Annotated[str, AfterValidator(_state)]


# =====================================================
# CART
# =====================================================
class CartItemIn(BaseModel):
    """Schema for adding a product to the cart."""

    sku: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9-]+$")
    quantity: int = Field(1, ge=1, le=99)


class QuantityIn(BaseModel):
    quantity: int = Field(..., ge=1, le=99)


class CartItemOut(BaseModel):
    sku: str
    name: str
    quantity: int
    unit_price: Decimal


class CartOut(BaseModel):
    session_id: str
    items: List[CartItemOut]
    subtotal: Decimal
    expires_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


# =====================================================
# PEOPLE
# =====================================================
class RecipientIn(BaseModel):
    """Who receives the flowers."""

    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    phone: Phone
    institution: Optional[str] = Field(None, max_length=200)
    address1: str = Field(..., min_length=1, max_length=200)
    address2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: StateCode
    zip: ZipCode

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class SenderIn(BaseModel):
    """Customer contact and billing address."""

    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: str
    phone: Phone
    address1: str = Field(..., min_length=1, max_length=200)
    address2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: StateCode
    zip: ZipCode

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_RE.match(value):
            raise ValueError("Invalid email address")
        return value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class CardMessageIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)
    signature: Optional[str] = Field(None, max_length=200)

    def render(self) -> str:
        if self.signature:
            return f"{self.message}\n\n{self.signature}"
        return self.message


# =====================================================
# DELIVERY
# =====================================================
class DeliveryDateOut(BaseModel):
    date: date
    fee: Decimal
    available: bool


class DeliveryDatesOut(BaseModel):
    zip: str
    dates: List[DeliveryDateOut]
    #display only, never used to price an order
    display_fee: Decimal


class QuoteIn(BaseModel):
    """Quote as held by the client - re-validated before any charge."""

    zip: ZipCode
    date: date
    fee: Decimal
    quoted_at: datetime
    expires_at: datetime


class QuoteOut(QuoteIn):
    model_config = ConfigDict(from_attributes=True)


class TotalOut(BaseModel):
    subtotal: Decimal
    delivery: Decimal
    tax: Decimal
    total: Decimal


# =====================================================
# CHECKOUT
# =====================================================
class PaymentIn(BaseModel):
    """Opaque single-use token produced client-side by the processor."""

    token: str = Field(..., min_length=1, max_length=4096)
    processor: str


class PlaceOrderIn(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    quote: QuoteIn
    payment: PaymentIn
    recipient: RecipientIn
    sender: SenderIn
    card: CardMessageIn
    special_instructions: Optional[str] = Field(None, max_length=1000)
    user_id: Optional[str] = None
    #advisory display value, never used for charging
    client_total: Optional[Decimal] = None


class OrderItemOut(BaseModel):
    id: int
    product_code: str
    product_name: str | None = None
    quantity: int
    price: Decimal
    recipient_name: str
    address1: str
    address2: str | None = None
    city: str
    state: str
    zip: str
    delivery_date: date
    card_message: str

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    status: str
    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    total: Decimal
    customer_name: str
    customer_email: str
    confirmation_id: str | None = None
    payment_processor: str
    needs_reconciliation: bool
    created_at: datetime
    items: List[OrderItemOut]

    model_config = ConfigDict(from_attributes=True)


class PaymentKeyOut(BaseModel):
    processor: str
    key: str
    login_id: str | None = None


# =====================================================
# SUBSCRIPTIONS
# =====================================================
class SubscriptionCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    tier: str
    frequency: str = "monthly"
    recipient: RecipientIn
    sender: SenderIn
    card_message: str = Field("Enjoy your flowers!", min_length=1, max_length=1000)
    payment_processor: str
    payment_customer_ref: str = Field(..., min_length=1)
    payment_ref: Optional[str] = None
    address_ref: Optional[str] = None
    first_delivery_date: Optional[date] = None


class SubscriptionDeliveryOut(BaseModel):
    id: int
    delivery_date: date
    status: str
    attempts: int
    order_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionOut(BaseModel):
    id: int
    user_id: str
    tier: str
    frequency: str
    status: str
    price: Decimal
    next_delivery_date: date | None = None
    deliveries: List[SubscriptionDeliveryOut]

    model_config = ConfigDict(from_attributes=True)


class PortalSessionIn(BaseModel):
    return_url: str = Field(..., min_length=1)


class PortalSessionOut(BaseModel):
    url: str


# =====================================================
# WEBHOOKS / ADMIN
# =====================================================
class FulfillmentWebhookIn(BaseModel):
    confirmation_id: str
    status: str


class ReconciliationOut(BaseModel):
    id: int
    status: str
    total: Decimal
    payment_processor: str
    charge_id: str | None = None
    fulfillment_attempts: int
    reconciliation_reason: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RefundIn(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ResolveChargeIn(BaseModel):
    #processor charge id when the capture went through, null when it did not
    charge_id: Optional[str] = Field(None, min_length=1, max_length=100)
