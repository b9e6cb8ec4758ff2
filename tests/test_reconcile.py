"""Tests for finding and finishing interrupted stock updates."""

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from checkout import CheckoutService
from errors import InvalidOrderStateError, NotFoundError, OrderInProgressError
from reconcile import audit_order, find_stalled_orders, resume
from schemas import StockPick


@pytest.fixture
def checkout(db, gateway):
    return CheckoutService(db, gateway)


@pytest.fixture
def interrupted(db, checkout, users, make_product, shipping):
    """An order whose verification took stock for its first item and died on the second."""
    a = make_product(name="A")
    b = make_product(name="B")
    result = checkout.create(users["buyer"], [
        StockPick(product_id=a, size="M", color_name="Black", quantity=1),
        StockPick(product_id=b, size="M", color_name="Black", quantity=2),
    ], shipping, 10.0)
    oid = ObjectId(result["order_id"])
    db["product"].update_one({"_id": ObjectId(a)}, {"$inc": {"variants.0.stock": -1}})
    db["order"].update_one({"_id": oid}, {"$set": {
        "stock_status": "applying",
        "stock_lock_at": datetime.now(timezone.utc) - timedelta(hours=1),
        # item 1 was claimed, then the process died before decrementing it
        "stock_claimed": [0, 1],
        "stock_applied": [0],
        "payment_details.payment_id": "pay_1",
    }})
    return a, b, result["order_id"]


class TestFindStalled:
    def test_reports_interrupted_order(self, db, interrupted):
        _, _, order_id = interrupted
        stalled = find_stalled_orders(db)
        assert len(stalled) == 1
        assert stalled[0]["order_id"] == order_id
        assert stalled[0]["applied_items"] == [0]
        assert stalled[0]["unconfirmed_items"] == [1]
        assert stalled[0]["pending_items"] == [1]
        assert stalled[0]["payment_id"] == "pay_1"

    def test_ignores_fresh_and_paid_orders(self, db, checkout, users, make_product, shipping):
        pid = make_product()
        fresh = checkout.create(users["buyer"], [StockPick(product_id=pid, size="M", color_name="Black", quantity=1)],
                                shipping, 10.0)
        assert find_stalled_orders(db) == []

        db["order"].update_one({"_id": ObjectId(fresh["order_id"])},
                               {"$set": {"is_paid": True, "stock_status": "applied", "stock_applied": [0]}})
        assert find_stalled_orders(db) == []


class TestAudit:
    def test_lists_items_against_ledger(self, db, interrupted):
        a, b, order_id = interrupted
        report = audit_order(db, order_id)
        assert report["is_paid"] is False
        assert report["stock_status"] == "applying"
        assert [i["applied"] for i in report["items"]] == [True, False]
        assert [i["unconfirmed"] for i in report["items"]] == [False, True]
        assert report["items"][0]["current_stock"] == 2
        assert report["items"][1]["current_stock"] == 3
        assert all(i["variant_exists"] for i in report["items"])

    def test_missing_variant(self, db, interrupted):
        _, b, order_id = interrupted
        db["product"].delete_one({"_id": ObjectId(b)})
        item = audit_order(db, order_id)["items"][1]
        assert item["variant_exists"] is False
        assert item["current_stock"] is None

    def test_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            audit_order(db, "nope")


class TestResume:
    def test_finishes_remaining_steps(self, db, checkout, interrupted, stock_of):
        a, b, order_id = interrupted
        order = resume(checkout, order_id)
        assert order["is_paid"] is True
        assert order["stock_status"] == "applied"
        assert stock_of(a) == 2
        assert stock_of(b) == 1
        assert find_stalled_orders(db) == []

    def test_resume_is_idempotent(self, checkout, interrupted, stock_of):
        a, b, order_id = interrupted
        resume(checkout, order_id)
        resume(checkout, order_id)
        assert stock_of(a) == 2
        assert stock_of(b) == 1

    def test_requires_verified_payment(self, db, checkout, interrupted):
        _, _, order_id = interrupted
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"payment_details.payment_id": None}})
        with pytest.raises(InvalidOrderStateError):
            resume(checkout, order_id)

    def test_unconfirmed_step_is_retried_once(self, checkout, interrupted, stock_of, caplog):
        _, b, order_id = interrupted
        resume(checkout, order_id)
        assert stock_of(b) == 1
        assert "never confirmed" in caplog.text

    def test_live_verification_is_left_alone(self, db, checkout, interrupted, stock_of):
        a, b, order_id = interrupted
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"stock_lock_at": datetime.now(timezone.utc)}})
        with pytest.raises(OrderInProgressError):
            resume(checkout, order_id)
        assert (stock_of(a), stock_of(b)) == (2, 3)
