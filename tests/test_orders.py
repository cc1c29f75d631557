"""
Tests for checkout and the order status lifecycle.
"""

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import cart
import inventory
import orders
from errors import EmptyCart, IntegrityFailure, InsufficientStock, InvalidTransition


@pytest.fixture
def filled_cart(db, make_listing):
    """Buyer cart with two sale listings: 2 x 10.00 and 1 x 7.50."""
    first = make_listing(seller_id="seller-a", price=10.0, quantity=5)
    second = make_listing(seller_id="seller-b", price=7.5, quantity=3)
    cart.add_item(db, "buyer-1", first, 2)
    cart.add_item(db, "buyer-1", second, 1)
    return first, second


class TestCheckout:
    def test_checkout_creates_pending_order(self, db, filled_cart, listing_doc):
        first, second = filled_cart

        order = orders.checkout(db, "buyer-1")

        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["subtotal"] == 27.5
        assert order["total"] == 27.5
        assert [(i["listing_id"], i["quantity"], i["unit_price"]) for i in order["items"]] == [
            (first, 2, 10.0),
            (second, 1, 7.5),
        ]
        assert {i["seller_id"] for i in order["items"]} == {"seller-a", "seller-b"}
        assert listing_doc(first)["quantity"] == 3
        assert listing_doc(second)["quantity"] == 2

    def test_checkout_empties_cart_but_keeps_it(self, db, filled_cart):
        orders.checkout(db, "buyer-1")

        view = cart.get_active_cart(db, "buyer-1")
        assert view["cart"] is not None
        assert view["items"] == []

    def test_empty_cart(self, db):
        with pytest.raises(EmptyCart):
            orders.checkout(db, "buyer-1")

    def test_failed_line_aborts_everything(self, db, make_listing, listing_doc):
        ok = make_listing(quantity=5)
        short = make_listing(quantity=1)
        never_reached = make_listing(quantity=5)
        cart.add_item(db, "buyer-1", ok, 2)
        cart.add_item(db, "buyer-1", short, 2)
        cart.add_item(db, "buyer-1", never_reached, 1)

        with pytest.raises(InsufficientStock) as exc:
            orders.checkout(db, "buyer-1")

        assert exc.value.listing_id == short
        assert db["order"].count_documents({}) == 0
        assert listing_doc(ok)["quantity"] == 5
        assert listing_doc(short)["quantity"] == 1
        assert listing_doc(never_reached)["quantity"] == 5
        assert db["reservation"].count_documents({"status": "held"}) == 0
        assert len(cart.get_active_cart(db, "buyer-1")["items"]) == 3

    def test_failed_order_write_releases_stock(self, db, filled_cart, listing_doc, monkeypatch):
        first, second = filled_cart

        def broken_insert(*args, **kwargs):
            raise PyMongoError("connection reset")

        monkeypatch.setattr(orders, "create_document", broken_insert)

        with pytest.raises(IntegrityFailure):
            orders.checkout(db, "buyer-1")

        assert db["order"].count_documents({}) == 0
        assert listing_doc(first)["quantity"] == 5
        assert listing_doc(second)["quantity"] == 3
        assert db["reservation"].count_documents({"status": "held"}) == 0
        assert len(cart.get_active_cart(db, "buyer-1")["items"]) == 2

    def test_store_error_mid_reservation_releases_earlier_lines(self, db, filled_cart, listing_doc, monkeypatch):
        first, second = filled_cart
        take_stock = inventory._take_stock
        calls = []

        def flaky_take_stock(db, listing_id, quantity):
            calls.append(listing_id)
            if len(calls) == 2:
                raise PyMongoError("not primary")
            return take_stock(db, listing_id, quantity)

        monkeypatch.setattr(inventory, "_take_stock", flaky_take_stock)

        with pytest.raises(IntegrityFailure):
            orders.checkout(db, "buyer-1")

        assert calls == [first, second]
        assert db["order"].count_documents({}) == 0
        assert listing_doc(first)["quantity"] == 5
        assert listing_doc(second)["quantity"] == 3
        assert db["reservation"].count_documents({"status": "held"}) == 0
        assert len(cart.get_active_cart(db, "buyer-1")["items"]) == 2

    def test_retry_after_adjusting_cart(self, db, make_listing):
        listing_id = make_listing(quantity=1)
        item = cart.add_item(db, "buyer-1", listing_id, 3)
        with pytest.raises(InsufficientStock):
            orders.checkout(db, "buyer-1")

        cart.update_quantity(db, "buyer-1", str(item["_id"]), 1)
        order = orders.checkout(db, "buyer-1")

        assert order["items"][0]["quantity"] == 1

    def test_price_is_frozen_at_checkout(self, db, filled_cart):
        first, _ = filled_cart
        order = orders.checkout(db, "buyer-1")

        db["listing"].update_one({"_id": ObjectId(first)}, {"$set": {"price": 99.0}})

        stored = orders.get_order(db, str(order["_id"]))
        line = next(i for i in stored["items"] if i["listing_id"] == first)
        assert line["unit_price"] == 10.0
        assert line["subtotal"] == 20.0
        assert stored["subtotal"] == 27.5

    def test_last_copy_race_between_two_buyers(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=1)
        cart.add_item(db, "buyer-1", listing_id)
        cart.add_item(db, "buyer-2", listing_id)

        orders.checkout(db, "buyer-1")
        with pytest.raises(InsufficientStock):
            orders.checkout(db, "buyer-2")

        assert db["order"].count_documents({}) == 1
        assert listing_doc(listing_id)["quantity"] == 0


class TestTransitions:
    def test_happy_path(self, db, filled_cart):
        order_id = str(orders.checkout(db, "buyer-1")["_id"])

        paid = orders.transition(db, order_id, "paid")
        assert paid["payment_status"] == "paid"
        orders.transition(db, order_id, "shipped")
        delivered = orders.transition(db, order_id, "delivered")

        assert delivered["status"] == "delivered"

    def test_cannot_skip_ahead(self, db, filled_cart):
        order_id = str(orders.checkout(db, "buyer-1")["_id"])

        with pytest.raises(InvalidTransition):
            orders.transition(db, order_id, "shipped")

    def test_cancel_releases_stock(self, db, filled_cart, listing_doc):
        first, second = filled_cart
        order_id = str(orders.checkout(db, "buyer-1")["_id"])

        cancelled = orders.transition(db, order_id, "cancelled")

        assert cancelled["status"] == "cancelled"
        assert listing_doc(first)["quantity"] == 5
        assert listing_doc(second)["quantity"] == 3

    def test_cancel_after_payment_refunds(self, db, filled_cart):
        order_id = str(orders.checkout(db, "buyer-1")["_id"])
        orders.transition(db, order_id, "paid")

        cancelled = orders.transition(db, order_id, "cancelled")

        assert cancelled["payment_status"] == "refunded"

    @pytest.mark.parametrize("terminal", ["cancelled", "delivered"])
    def test_terminal_orders_do_not_move(self, db, filled_cart, listing_doc, terminal):
        first, _ = filled_cart
        order_id = str(orders.checkout(db, "buyer-1")["_id"])
        if terminal == "delivered":
            for step in ("paid", "shipped", "delivered"):
                orders.transition(db, order_id, step)
        else:
            orders.transition(db, order_id, "cancelled")
        before = orders.get_order(db, order_id)

        for target in ("paid", "shipped", "cancelled"):
            with pytest.raises(InvalidTransition):
                orders.transition(db, order_id, target)

        assert orders.get_order(db, order_id) == before
        assert listing_doc(first)["quantity"] == (5 if terminal == "cancelled" else 3)

    def test_failed_payment_keeps_order_pending(self, db, filled_cart):
        order_id = str(orders.checkout(db, "buyer-1")["_id"])

        failed = orders.record_payment(db, order_id, "failed")
        assert failed["status"] == "pending"
        assert failed["payment_status"] == "failed"

        paid = orders.record_payment(db, order_id, "paid")
        assert paid["status"] == "paid"
        assert paid["payment_status"] == "paid"


class TestListing:
    def test_seller_sees_orders_with_their_items(self, db, filled_cart):
        orders.checkout(db, "buyer-1")

        assert len(orders.list_orders(db, seller_id="seller-a")) == 1
        assert len(orders.list_orders(db, seller_id="seller-z")) == 0
        assert len(orders.list_orders(db, buyer_id="buyer-1")) == 1
