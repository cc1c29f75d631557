"""
Tests for listing availability and the reservation ledger.
"""

import pytest

import inventory
from errors import InsufficientStock, InvalidQuantity, ListingInactive, ListingNotFound


class TestReserve:
    def test_sale_reservation_takes_stock(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=5)

        inventory.reserve(db, listing_id, 2, "order", "order-1")

        assert listing_doc(listing_id)["quantity"] == 3
        row = db["reservation"].find_one({"owner_id": "order-1"})
        assert row["status"] == "held"
        assert row["decremented"] is True

    def test_cannot_reserve_more_than_stock(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=1)

        with pytest.raises(InsufficientStock) as exc:
            inventory.reserve(db, listing_id, 2, "order", "order-1")

        assert exc.value.listing_id == listing_id
        assert listing_doc(listing_id)["quantity"] == 1
        assert db["reservation"].count_documents({}) == 0

    def test_inactive_listing_is_rejected(self, db, make_listing):
        listing_id = make_listing(is_active=False)

        with pytest.raises(ListingInactive):
            inventory.reserve(db, listing_id, 1, "order", "order-1")

    def test_unknown_listing(self, db):
        with pytest.raises(ListingNotFound):
            inventory.reserve(db, "5f0c2b3e9d1e8a0012345678", 1, "order", "order-1")

    def test_quantity_must_be_positive(self, db, make_listing):
        with pytest.raises(InvalidQuantity):
            inventory.reserve(db, make_listing(), 0, "order", "order-1")

    def test_last_unit_goes_to_one_buyer(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=1)

        inventory.reserve(db, listing_id, 1, "order", "order-a")
        with pytest.raises(InsufficientStock):
            inventory.reserve(db, listing_id, 1, "order", "order-b")

        assert listing_doc(listing_id)["quantity"] == 0

    def test_sold_out_listing_is_deactivated(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=2)

        inventory.reserve(db, listing_id, 2, "order", "order-1")

        listing = listing_doc(listing_id)
        assert listing["is_active"] is False
        assert listing["inactive_reason"] == "sold_out"
        assert inventory.is_available(db, listing_id) is False

    def test_loan_listing_keeps_quantity(self, db, make_listing, listing_doc):
        listing_id = make_listing(type="loan", quantity=1)

        inventory.reserve(db, listing_id, 1, "loan", "loan-1")

        assert listing_doc(listing_id)["quantity"] == 1
        assert db["reservation"].find_one({"owner_id": "loan-1"})["decremented"] is False


class TestRelease:
    def test_release_restores_stock(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=3)
        inventory.reserve(db, listing_id, 2, "order", "order-1")

        assert inventory.release(db, "order-1") == 1
        assert listing_doc(listing_id)["quantity"] == 3

    def test_double_release_is_a_no_op(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=3)
        inventory.reserve(db, listing_id, 2, "order", "order-1")

        inventory.release(db, "order-1")
        assert inventory.release(db, "order-1") == 0
        assert listing_doc(listing_id)["quantity"] == 3

    def test_release_reactivates_sold_out_listing(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=1)
        inventory.reserve(db, listing_id, 1, "order", "order-1")

        inventory.release(db, "order-1")

        listing = listing_doc(listing_id)
        assert listing["is_active"] is True
        assert listing["inactive_reason"] is None

    def test_release_keeps_withdrawn_listing_hidden(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=2)
        inventory.reserve(db, listing_id, 1, "order", "order-1")
        inventory.deactivate(db, listing_id)

        inventory.release(db, "order-1")

        listing = listing_doc(listing_id)
        assert listing["quantity"] == 2
        assert listing["is_active"] is False

    def test_total_reserved_never_exceeds_stock_plus_releases(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=3)
        granted = 0
        for n in range(6):
            try:
                inventory.reserve(db, listing_id, 1, "order", f"order-{n}")
                granted += 1
            except InsufficientStock:
                pass
        released = inventory.release(db, "order-0")

        assert granted == 3
        assert listing_doc(listing_id)["quantity"] == 3 - granted + released


class TestAvailability:
    def test_loan_listing_available_when_active(self, db, make_listing):
        assert inventory.is_available(db, make_listing(type="loan", quantity=0)) is True

    def test_restock_brings_sold_out_listing_back(self, db, make_listing, listing_doc):
        listing_id = make_listing(quantity=1)
        inventory.reserve(db, listing_id, 1, "order", "order-1")

        inventory.restock(db, listing_id, 4)

        assert listing_doc(listing_id)["quantity"] == 4
        assert inventory.is_available(db, listing_id) is True
