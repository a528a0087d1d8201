from sqlalchemy import Boolean, Column, Integer, String, DateTime, Numeric
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from bloom.data.database import Base


def _now():
    return datetime.now(timezone.utc)


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    idempotency_key = Column(String(200), nullable=False, unique=True)
    #fingerprint of the checkout payload, catches key reuse with different content
    request_hash = Column(String(64), nullable=False)
    user_id = Column(String(100), nullable=True, index=True)

    # pending, processing, confirmed, delivered, cancelled, refunded
    status = Column(String(20), nullable=False, default="pending", index=True)

    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    customer_name = Column(String(120), nullable=False)
    customer_email = Column(String(200), nullable=False, index=True)
    customer_phone = Column(String(20), nullable=False)
    billing_address1 = Column(String(200), nullable=False)
    billing_address2 = Column(String(200), nullable=True)
    billing_city = Column(String(100), nullable=False)
    billing_state = Column(String(2), nullable=False)
    billing_zip = Column(String(5), nullable=False)

    payment_processor = Column(String(20), nullable=False)
    charge_id = Column(String(100), nullable=True)
    payment_last4 = Column(String(4), nullable=True)
    refund_id = Column(String(100), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    confirmation_id = Column(String(100), nullable=True, unique=True)
    fulfillment_attempts = Column(Integer, nullable=False, default=0)
    next_fulfillment_attempt_at = Column(DateTime(timezone=True), nullable=True)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    reconciliation_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    #set before the first processor call; from here on the charge outcome may be unknown
    charge_attempted_at = Column(DateTime(timezone=True), nullable=True)
    charged_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemModel.id",
    )
