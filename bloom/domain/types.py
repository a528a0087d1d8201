# bloom/domain/types.py
"""
Typed values passed between resolver, gateway and orchestrator.
Raw upstream JSON is parsed into these at the client boundary and never flows further.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Tuple, Union

from bloom.utils.settings import QUOTE_TTL_SECONDS


@dataclass(frozen=True)
class CartLine:
    sku: str
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CartSnapshot:
    session_id: str
    lines: Tuple[CartLine, ...] = ()

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0.00"))

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class DeliveryDate:
    date: date
    fee: Decimal
    available: bool


#resolve() outcomes
@dataclass(frozen=True)
class DatesAvailable:
    zip: str
    dates: List[DeliveryDate]


@dataclass(frozen=True)
class NotDeliverableResult:
    zip: str


@dataclass(frozen=True)
class LookupFailed:
    zip: str
    reason: str


ResolveResult = Union[DatesAvailable, NotDeliverableResult, LookupFailed]


@dataclass(frozen=True)
class DeliveryQuote:
    zip: str
    date: date
    fee: Decimal
    quoted_at: datetime
    expires_at: datetime

    @classmethod
    def issue(cls, zip_code: str, delivery_date: date, fee: Decimal, now: datetime | None = None) -> "DeliveryQuote":
        now = now or datetime.now(timezone.utc)
        return cls(
            zip=zip_code,
            date=delivery_date,
            fee=fee,
            quoted_at=now,
            expires_at=now + timedelta(seconds=QUOTE_TTL_SECONDS),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


@dataclass(frozen=True)
class PriceCheck:
    """Authoritative totals from the fulfillment network's get-total call."""

    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    order_total: Decimal | None = None


@dataclass(frozen=True)
class FulfillmentAck:
    confirmation_id: str
    order_number: str | None = None


@dataclass(frozen=True)
class CardFields:
    number: str
    exp_month: int
    exp_year: int
    cvv: str

    def __repr__(self) -> str:
        return "CardFields(****)"


@dataclass(frozen=True)
class PaymentToken:
    value: str = field(repr=False)
    processor: str
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


@dataclass(frozen=True)
class StoredPaymentMethod:
    """Processor-side customer/payment profile, used for subscription cycles."""

    processor: str
    customer_ref: str
    payment_ref: str | None = None


PaymentSource = Union[PaymentToken, StoredPaymentMethod]


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    charge_id: str | None = None
    last4: str | None = None
    declined_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    failure_reason: str | None = None
