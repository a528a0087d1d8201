#import all models so SQLAlchemy registers them in Base.metadata

from bloom.data.models.cart import CartModel
from bloom.data.models.cart_item import CartItemModel
from bloom.data.models.order import OrderModel
from bloom.data.models.order_item import OrderItemModel
from bloom.data.models.subscription import SubscriptionModel
from bloom.data.models.subscription_delivery import SubscriptionDeliveryModel

__all__ = [
    "CartModel",
    "CartItemModel",
    "OrderModel",
    "OrderItemModel",
    "SubscriptionModel",
    "SubscriptionDeliveryModel",
]
