from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any
from sqlalchemy.orm import Session
from bloom.data.models.cart import CartModel
from bloom.data.models.cart_item import CartItemModel
from bloom.domain.types import CartLine, CartSnapshot
from bloom.repos.cart_repo import CartRepo
from bloom.services.florist_client import FloristClient
from bloom.utils.clock import as_utc, utcnow
from bloom.utils.settings import CART_TTL_SECONDS
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


class CartService:
    """
    Session-scoped cart, simple CQRS split
    commands (add, update, remove, destroy) change state
    queries (get, snapshot) read only
    """

    def __init__(self, db: Session, florist: FloristClient):
        self.repo = CartRepo(db)
        self.florist = florist

    def _active_cart(self, session_id: str) -> CartModel | None:
        cart = self.repo.get_by_session(session_id)
        if cart and as_utc(cart.expires_at) <= utcnow():
            logger.info(f"Cart {cart.id} for session expired, dropping")
            self.repo.delete_cart(cart)
            return None
        return cart

    #query
    def get_cart(self, session_id: str) -> Dict[str, Any] | None:
        cart = self._active_cart(session_id)

        if not cart:
            return None

        items = self.repo.get_cart_items(cart.id)
        subtotal = sum((i.unit_price * i.quantity for i in items), Decimal("0.00"))

        return {
            "session_id": cart.session_id,
            "items": [
                {
                    "sku": i.sku,
                    "name": i.name,
                    "quantity": i.quantity,
                    "unit_price": i.unit_price,
                }
                for i in items
            ],
            "subtotal": subtotal,
            "expires_at": cart.expires_at,
        }

    def snapshot(self, session_id: str) -> CartSnapshot:
        """Immutable copy handed to the orchestrator, empty if there is no cart."""
        cart = self._active_cart(session_id)
        if not cart:
            return CartSnapshot(session_id=session_id)

        lines = tuple(
            CartLine(
                sku=i.sku,
                name=i.name,
                quantity=i.quantity,
                unit_price=Decimal(i.unit_price),
            )
            for i in self.repo.get_cart_items(cart.id)
        )
        return CartSnapshot(session_id=session_id, lines=lines)

    #commands
    def add_item(self, session_id: str, sku: str, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            raise ValueError("Quantity must be greater than 0")

        #canonical price comes from the network, never from the client
        logger.info(f"Fetching product {sku} for cart")
        product = self.florist.get_product(sku)

        cart = self._active_cart(session_id)
        if not cart:
            cart = self.repo.create_cart(
                CartModel(
                    session_id=session_id,
                    version=1,
                    expires_at=utcnow() + timedelta(seconds=CART_TTL_SECONDS),
                )
            )
            logger.info(f"Created cart {cart.id}")

        existing_item = self.repo.get_cart_item(cart.id, sku)

        if existing_item:
            logger.info(
                f"Product {sku} already in cart {cart.id}, quantity "
                f"{existing_item.quantity} -> {existing_item.quantity + quantity}"
            )
            existing_item.quantity = min(existing_item.quantity + quantity, 99)
            existing_item.unit_price = product["price"]  # refresh price
            self.repo.add_cart_item(existing_item)
        else:
            self.repo.add_cart_item(
                CartItemModel(
                    cart_id=cart.id,
                    sku=sku,
                    name=product["name"],
                    quantity=quantity,
                    unit_price=product["price"],
                )
            )

        self._bump(cart, extend=True)
        return self.get_cart(session_id)

    def update_quantity(self, session_id: str, sku: str, quantity: int) -> Dict[str, Any]:
        if not 1 <= quantity <= 99:
            raise ValueError("Quantity must be between 1 and 99")

        cart = self._active_cart(session_id)
        if not cart:
            raise LookupError("Cart does not exist")

        item = self.repo.get_cart_item(cart.id, sku)
        if not item:
            raise LookupError(f"Product {sku} is not in the cart")

        #last write wins, not money-bearing until checkout
        item.quantity = quantity
        self.repo.add_cart_item(item)

        self._bump(cart, extend=True)
        return self.get_cart(session_id)

    def remove_item(self, session_id: str, sku: str) -> Dict[str, Any]:
        cart = self._active_cart(session_id)
        if not cart:
            raise LookupError("Cart does not exist")

        logger.info(f"Removing {sku} from cart {cart.id}")
        self.repo.delete_cart_item(cart.id, sku)

        self._bump(cart, extend=False)
        return self.get_cart(session_id)

    def destroy(self, session_id: str) -> bool:
        cart = self.repo.get_by_session(session_id)
        if not cart:
            return False
        self.repo.delete_cart(cart)
        logger.info(f"Cart {cart.id} destroyed")
        return True

    def expire_carts(self) -> int:
        count = self.repo.delete_expired(utcnow())
        logger.info(f"Expired {count} carts")
        return count

    def _bump(self, cart: CartModel, extend: bool) -> None:
        new_data = {"version": cart.version + 1}
        if extend:
            #shopper is active, keep the cart alive
            new_data["expires_at"] = utcnow() + timedelta(seconds=CART_TTL_SECONDS)

        # optimistic locking
        # UPDATE carts SET version = 2 WHERE id = 1 AND version = 1
        rowcount = self.repo.update_cart_version(
            cart_id=cart.id,
            old_version=cart.version,
            new_data=new_data,
        )

        if rowcount == 0:
            self.repo.rollback()
            raise RuntimeError("Concurrency conflict - cart was modified by another request")

        self.repo.commit()
