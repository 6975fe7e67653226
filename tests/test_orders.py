"""Tests for order status changes after checkout."""

import pytest

import carts
import checkout
import orders
from errors import Forbidden, InvalidState, NotFound, ValidationError


@pytest.fixture
def placed(store, gateway, customer, make_product):
    product = make_product(quantity=5)
    carts.add_item(store, customer["id"], product["id"], 2)
    result = checkout.create_order(store, gateway, customer["id"], customer["addresses"][0]["id"], "stripe")
    return result.order, product


class TestCancel:
    def test_cancel_restores_stock(self, store, customer, placed):
        order, product = placed
        assert store.get_product(product["id"])["quantity"] == 3

        cancelled = orders.cancel_order(store, order["id"], customer)

        assert cancelled["order_status"] == "cancelled"
        stored = store.get_product(product["id"])
        assert stored["quantity"] == 5
        assert stored["in_stock"] is True
        deltas = [m["delta"] for m in store.list_stock_movements(product["id"])]
        assert deltas == [-2, 2]

    def test_cancel_delivered_fails(self, store, customer, admin, placed):
        order, product = placed
        orders.set_order_status(store, order["id"], "delivered", admin)

        with pytest.raises(InvalidState):
            orders.cancel_order(store, order["id"], customer)
        stored = store.get_order(order["id"])
        assert stored["order_status"] == "delivered"
        assert store.get_product(product["id"])["quantity"] == 3

    def test_cancel_twice_does_not_restock_twice(self, store, customer, placed):
        order, product = placed
        orders.cancel_order(store, order["id"], customer)
        with pytest.raises(InvalidState):
            orders.cancel_order(store, order["id"], customer)
        assert store.get_product(product["id"])["quantity"] == 5

    def test_only_owner_or_admin(self, store, make_user, admin, placed):
        order, _ = placed
        with pytest.raises(Forbidden):
            orders.cancel_order(store, order["id"], make_user("mallory"))
        assert orders.cancel_order(store, order["id"], admin)["order_status"] == "cancelled"

    def test_unknown_order(self, store, customer):
        with pytest.raises(NotFound):
            orders.cancel_order(store, "000000000000000000000000", customer)


class TestAdminStatus:
    def test_moves_between_open_states(self, store, admin, placed):
        order, _ = placed
        assert orders.set_order_status(store, order["id"], "shipped", admin)["order_status"] == "shipped"
        assert orders.set_order_status(store, order["id"], "processing", admin)["order_status"] == "processing"

    def test_terminal_states_are_final(self, store, admin, placed):
        order, _ = placed
        orders.set_order_status(store, order["id"], "delivered", admin)
        with pytest.raises(InvalidState):
            orders.set_order_status(store, order["id"], "shipped", admin)
        # repeating the current status is a no-op
        assert orders.set_order_status(store, order["id"], "delivered", admin)["order_status"] == "delivered"

    def test_cancelled_through_admin_restocks(self, store, admin, placed):
        order, product = placed
        orders.set_order_status(store, order["id"], "cancelled", admin)
        assert store.get_product(product["id"])["quantity"] == 5

    def test_cancelling_a_cancelled_order_is_a_no_op(self, store, admin, placed):
        order, product = placed
        orders.set_order_status(store, order["id"], "cancelled", admin)
        again = orders.set_order_status(store, order["id"], "cancelled", admin)
        assert again["order_status"] == "cancelled"
        assert store.get_product(product["id"])["quantity"] == 5
        assert len(store.list_stock_movements(product["id"])) == 2

    def test_requires_admin(self, store, customer, placed):
        order, _ = placed
        with pytest.raises(Forbidden):
            orders.set_order_status(store, order["id"], "shipped", customer)

    def test_rejects_unknown_status(self, store, admin, placed):
        order, _ = placed
        with pytest.raises(ValidationError):
            orders.set_order_status(store, order["id"], "pending", admin)


class TestPaymentStatus:
    def test_marks_paid(self, store, placed):
        order, _ = placed
        updated = orders.mark_payment_status(store, order["payment_intent_id"], "paid")
        assert updated["payment_status"] == "paid"
        assert updated["order_status"] == "processing"

    def test_redelivery_is_a_no_op(self, store, placed):
        order, _ = placed
        first = orders.mark_payment_status(store, order["payment_intent_id"], "paid")
        second = orders.mark_payment_status(store, order["payment_intent_id"], "paid")
        assert second["payment_status"] == "paid"
        assert second["updated_at"] == first["updated_at"]

    def test_refunded_is_not_overwritten(self, store, placed):
        order, _ = placed
        orders.mark_payment_status(store, order["payment_intent_id"], "refunded")
        assert orders.mark_payment_status(store, order["payment_intent_id"], "paid")["payment_status"] == "refunded"

    def test_late_failure_does_not_unpay(self, store, placed):
        order, _ = placed
        orders.mark_payment_status(store, order["payment_intent_id"], "paid")
        stale = orders.mark_payment_status(store, order["payment_intent_id"], "failed")
        assert stale["payment_status"] == "paid"
        assert store.get_order(order["id"])["payment_status"] == "paid"

    def test_paid_can_be_refunded(self, store, placed):
        order, _ = placed
        orders.mark_payment_status(store, order["payment_intent_id"], "paid")
        assert orders.mark_payment_status(store, order["payment_intent_id"], "refunded")["payment_status"] == "refunded"

    def test_unknown_intent(self, store):
        assert orders.mark_payment_status(store, "pi_unknown", "paid") is None
