from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from bloom.data.database import Base

_OPEN = text("status IN ('scheduled', 'processing', 'failed')")


class SubscriptionDeliveryModel(Base):
    __tablename__ = "subscription_deliveries"

    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False)
    delivery_date = Column(Date, nullable=False)

    # scheduled -> processing -> delivered | failed; scheduled -> skipped | cancelled
    status = Column(String(20), nullable=False, default="scheduled")
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(String(500), nullable=True)

    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    idempotency_key = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    subscription = relationship("SubscriptionModel", back_populates="deliveries")

    __table_args__ = (
        #at most one open cycle per subscription
        Index(
            "uq_subscription_open_delivery",
            "subscription_id",
            unique=True,
            postgresql_where=_OPEN,
            sqlite_where=_OPEN,
        ),
    )
