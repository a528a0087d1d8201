from sqlalchemy import Column, Date, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from bloom.data.database import Base


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)

    tier = Column(String(20), nullable=False)
    product_code = Column(String(50), nullable=False)
    frequency = Column(String(20), nullable=False)  # weekly, biweekly, monthly
    status = Column(String(20), nullable=False, default="active")  # active, paused, cancelled, past_due
    price = Column(Numeric(10, 2), nullable=False)

    next_delivery_date = Column(Date, nullable=True)
    #day of month the monthly cadence sticks to
    anchor_day = Column(Integer, nullable=False)
    paused_from = Column(Date, nullable=True)

    #reference into the account address book, recipient snapshot below is what ships
    address_ref = Column(String(100), nullable=True)
    recipient_first_name = Column(String(50), nullable=False)
    recipient_last_name = Column(String(50), nullable=False)
    recipient_phone = Column(String(20), nullable=False)
    recipient_institution = Column(String(200), nullable=True)
    address1 = Column(String(200), nullable=False)
    address2 = Column(String(200), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(2), nullable=False)
    zip = Column(String(5), nullable=False)
    card_message = Column(Text, nullable=False)

    customer_first_name = Column(String(50), nullable=False)
    customer_last_name = Column(String(50), nullable=False)
    customer_email = Column(String(200), nullable=False)
    customer_phone = Column(String(20), nullable=False)
    billing_address1 = Column(String(200), nullable=False)
    billing_address2 = Column(String(200), nullable=True)
    billing_city = Column(String(100), nullable=False)
    billing_state = Column(String(2), nullable=False)
    billing_zip = Column(String(5), nullable=False)

    payment_processor = Column(String(20), nullable=False)
    payment_customer_ref = Column(String(100), nullable=False)
    payment_ref = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    deliveries = relationship(
        "SubscriptionDeliveryModel",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionDeliveryModel.delivery_date",
    )
