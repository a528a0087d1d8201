from datetime import timedelta
from decimal import Decimal

import pytest

from bloom.data.models.cart import CartModel
from bloom.utils.clock import utcnow


def _expire(db, session_id):
    cart = db.query(CartModel).filter(CartModel.session_id == session_id).one()
    cart.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()


class TestAddItem:
    def test_creates_cart_with_network_price(self, carts):
        cart = carts.add_item("sess-1", "F1-509", 2)

        assert cart["session_id"] == "sess-1"
        [item] = cart["items"]
        assert item["sku"] == "F1-509"
        assert item["quantity"] == 2
        assert item["unit_price"] == Decimal("49.00")
        assert cart["subtotal"] == Decimal("98.00")

    def test_adding_again_merges(self, carts):
        carts.add_item("sess-1", "F1-509", 1)

        cart = carts.add_item("sess-1", "F1-509", 2)

        [item] = cart["items"]
        assert item["quantity"] == 3

    def test_price_refreshed_on_merge(self, carts, florist):
        carts.add_item("sess-1", "F1-509", 1)
        florist.products["F1-509"]["price"] = Decimal("52.00")

        cart = carts.add_item("sess-1", "F1-509", 1)

        assert cart["items"][0]["unit_price"] == Decimal("52.00")

    def test_unknown_sku(self, carts):
        with pytest.raises(LookupError):
            carts.add_item("sess-1", "NOPE", 1)

    def test_quantity_must_be_positive(self, carts):
        with pytest.raises(ValueError):
            carts.add_item("sess-1", "F1-509", 0)


class TestUpdateRemove:
    def test_update_quantity(self, carts):
        carts.add_item("sess-1", "F1-509", 1)

        cart = carts.update_quantity("sess-1", "F1-509", 4)

        assert cart["items"][0]["quantity"] == 4

    @pytest.mark.parametrize("quantity", [0, 100])
    def test_update_bounds(self, carts, quantity):
        carts.add_item("sess-1", "F1-509", 1)

        with pytest.raises(ValueError):
            carts.update_quantity("sess-1", "F1-509", quantity)

    def test_update_missing_item(self, carts):
        carts.add_item("sess-1", "F1-509", 1)

        with pytest.raises(LookupError):
            carts.update_quantity("sess-1", "F1-120", 1)

    def test_remove(self, carts):
        carts.add_item("sess-1", "F1-509", 1)
        carts.add_item("sess-1", "F1-120", 1)

        cart = carts.remove_item("sess-1", "F1-509")

        assert [i["sku"] for i in cart["items"]] == ["F1-120"]

    def test_remove_without_cart(self, carts):
        with pytest.raises(LookupError):
            carts.remove_item("sess-1", "F1-509")


class TestSnapshot:
    def test_snapshot_is_immutable_copy(self, carts):
        carts.add_item("sess-1", "F1-509", 1)
        carts.add_item("sess-1", "F1-120", 2)

        snap = carts.snapshot("sess-1")

        assert snap.subtotal == Decimal("100.00")
        assert {line.sku for line in snap.lines} == {"F1-509", "F1-120"}
        carts.update_quantity("sess-1", "F1-120", 5)
        assert sum(line.quantity for line in snap.lines) == 3

    def test_no_cart_is_empty(self, carts):
        assert carts.snapshot("nobody").is_empty


class TestExpiry:
    def test_expired_cart_is_gone(self, carts, db):
        carts.add_item("sess-1", "F1-509", 1)
        _expire(db, "sess-1")

        assert carts.get_cart("sess-1") is None
        assert carts.snapshot("sess-1").is_empty

    def test_expire_carts_sweeps(self, carts, db):
        carts.add_item("sess-1", "F1-509", 1)
        carts.add_item("sess-2", "F1-509", 1)
        _expire(db, "sess-1")

        assert carts.expire_carts() == 1
        assert carts.get_cart("sess-2") is not None

    def test_destroy(self, carts):
        carts.add_item("sess-1", "F1-509", 1)

        assert carts.destroy("sess-1") is True
        assert carts.destroy("sess-1") is False
