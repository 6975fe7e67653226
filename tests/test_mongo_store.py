"""Tests for the MongoDB store.

These need DATABASE_URL to point at a replica set (transactions are not
available on a standalone server). Each test runs against a throwaway
database that is dropped afterwards.
"""

import threading
import uuid

import pytest
from pymongo import MongoClient

import carts
import checkout
import config
import coupons
import inventory
from database import MongoStore
from errors import CouponUsageExceeded, InsufficientStock

pytestmark = pytest.mark.skipif(not config.DATABASE_URL, reason="DATABASE_URL is not set")


@pytest.fixture
def store():
    client = MongoClient(config.DATABASE_URL, tz_aware=True)
    name = f"{config.DATABASE_NAME}_test_{uuid.uuid4().hex[:8]}"
    mongo = MongoStore(client[name])
    mongo.ensure_indexes()
    yield mongo
    client.drop_database(name)
    client.close()


def place(store, gateway, user, payment_method="COD"):
    return checkout.create_order(store, gateway, user["id"], user["addresses"][0]["id"], payment_method)


class TestStock:
    def test_decrement_flips_in_stock_at_zero(self, store, make_product):
        product = make_product(quantity=2)
        assert inventory.take_stock(store, product, 2)
        stored = store.get_product(product["id"])
        assert stored["quantity"] == 0
        assert stored["in_stock"] is False

    def test_guard_miss_leaves_stock(self, store, make_product):
        product = make_product(quantity=2)
        assert store.decrement_stock(product["id"], 3) is None
        with pytest.raises(InsufficientStock):
            inventory.take_stock(store, product, 3)
        assert store.get_product(product["id"])["quantity"] == 2

    def test_variable_products_untouched(self, store, make_product):
        product = make_product(product_type="variable", quantity=0, variation_options=[{"title": "M", "quantity": 4}])
        assert store.decrement_stock(product["id"], 1) is None

    def test_restore_records_movement(self, store, make_product):
        product = make_product(quantity=0)
        inventory.return_stock(store, product["id"], 3, "order-1")
        stored = store.get_product(product["id"])
        assert stored["quantity"] == 3
        assert stored["in_stock"] is True
        movements = store.list_stock_movements(product["id"])
        assert [(m["delta"], m["reason"]) for m in movements] == [(3, "cancellation")]


class TestRedeem:
    def test_counters_move_together(self, store, make_coupon):
        doc = make_coupon(per_user_limit=2)
        assert store.redeem_coupon(doc["id"], "u1")
        assert store.redeem_coupon(doc["id"], "u1")
        stored = store.get_coupon(doc["id"])
        assert stored["used_count"] == 2
        assert stored["user_usage"] == {"u1": 2}

    def test_per_user_guard(self, store, make_coupon):
        doc = make_coupon()
        coupons.redeem(store, doc["id"], "u1")
        assert store.redeem_coupon(doc["id"], "u1") is False
        with pytest.raises(CouponUsageExceeded):
            coupons.redeem(store, doc["id"], "u1")
        assert store.get_coupon(doc["id"])["used_count"] == 1

    def test_global_guard(self, store, make_coupon):
        doc = make_coupon(usage_limit=1)
        coupons.redeem(store, doc["id"], "u1")
        assert store.redeem_coupon(doc["id"], "u2") is False
        stored = store.get_coupon(doc["id"])
        assert stored["used_count"] == 1
        assert stored["user_usage"] == {"u1": 1}

    def test_lookup_is_case_insensitive(self, store, make_coupon):
        doc = make_coupon(code="flat10")
        assert coupons.get_by_code(store, " Flat10 ")["id"] == doc["id"]


class TestCart:
    def test_save_upserts_one_document_per_user(self, store, customer, make_product):
        product = make_product()
        first = carts.add_item(store, customer["id"], product["id"], 1)
        second = carts.add_item(store, customer["id"], product["id"], 2)
        assert first["id"] == second["id"]
        assert second["items"] == [{"product_id": product["id"], "quantity": 3}]
        assert store.db["cart"].count_documents({"user_id": customer["id"]}) == 1

    def test_parallel_adds_keep_every_line(self, store, customer, make_product):
        products = [make_product(name=f"Widget {n}") for n in range(4)]
        carts.add_item(store, customer["id"], products[0]["id"], 1)
        barrier = threading.Barrier(len(products) - 1)

        def add(product):
            barrier.wait()
            carts.add_item(store, customer["id"], product["id"], 1)

        threads = [threading.Thread(target=add, args=(p,)) for p in products[1:]]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        cart = store.get_cart(customer["id"])
        assert sorted(i["product_id"] for i in cart["items"]) == sorted(p["id"] for p in products)


class TestCheckout:
    def test_commit(self, store, gateway, customer, make_product, make_coupon):
        product = make_product(quantity=5, shipping_fee=5)
        coupon = make_coupon()
        carts.add_item(store, customer["id"], product["id"], 2)
        carts.apply_coupon(store, customer["id"], "FLAT10")

        order = place(store, gateway, customer).order

        assert order["total_amount"] == 200
        assert store.get_product(product["id"])["quantity"] == 3
        assert store.get_coupon(coupon["id"])["user_usage"] == {customer["id"]: 1}
        assert store.get_cart(customer["id"])["items"] == []

    def test_abort_rolls_back_and_releases_intent(self, store, gateway, customer, make_product, monkeypatch):
        product = make_product(quantity=5)
        carts.add_item(store, customer["id"], product["id"], 2)

        def broken_insert(doc, session=None):
            raise RuntimeError("write failed")

        monkeypatch.setattr(store, "insert_order", broken_insert)
        with pytest.raises(RuntimeError):
            place(store, gateway, customer, "stripe")

        assert gateway.cancelled == ["pi_test_1"]
        assert store.get_product(product["id"])["quantity"] == 5
        assert store.list_stock_movements(product["id"]) == []
        assert len(store.get_cart(customer["id"])["items"]) == 1

    def test_race_for_last_units(self, store, gateway, make_user, make_product):
        product = make_product(quantity=5)
        buyers = [make_user("ann"), make_user("bob")]
        for user in buyers:
            carts.add_item(store, user["id"], product["id"], 3)

        barrier = threading.Barrier(len(buyers))
        outcomes = []

        def buy(user):
            barrier.wait()
            try:
                place(store, gateway, user)
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=buy, args=(u,)) for u in buyers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert store.get_product(product["id"])["quantity"] == 2
        assert len(store.list_orders()) == 1
