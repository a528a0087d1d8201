from sqlalchemy import Column, Date, Integer, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import relationship

from bloom.data.database import Base


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    product_code = Column(String(50), nullable=False)
    product_name = Column(String(200), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False)

    # each item can go to a different recipient on a different day
    recipient_name = Column(String(120), nullable=False)
    recipient_institution = Column(String(200), nullable=True)
    recipient_phone = Column(String(20), nullable=False)
    address1 = Column(String(200), nullable=False)
    address2 = Column(String(200), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(2), nullable=False)
    zip = Column(String(5), nullable=False)
    delivery_date = Column(Date, nullable=False)
    card_message = Column(Text, nullable=False)
    special_instructions = Column(Text, nullable=True)

    order = relationship("OrderModel", back_populates="items")
