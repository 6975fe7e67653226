"""Order lifecycle after checkout.

Only `order_status` and `payment_status` change once an order exists.
Delivered and cancelled orders are final; any other status may move to any
status. Payment status follows the processor's webhook events.
"""
import logging
from typing import Optional

import inventory
from errors import Forbidden, InvalidState, NotFound, ValidationError

logger = logging.getLogger(__name__)

ADMIN_ORDER_STATUSES = ("processing", "shipped", "delivered", "cancelled")
TERMINAL_STATUSES = ("delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "unpaid", "paid", "failed", "refunded")


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def _authorize(order: dict, user: dict, action: str):
    if order["user_id"] != user["id"] and not is_admin(user):
        raise Forbidden(f"Not authorized to {action} this order")


def get_order(store, order_id: str, user: dict) -> dict:
    order = store.get_order(order_id)
    if order is None:
        raise NotFound("Order", order_id)
    _authorize(order, user, "view")
    return order


def list_orders(store, user: dict):
    return store.list_orders(None if is_admin(user) else user["id"])


def cancel_order(store, order_id: str, acting_user: dict) -> dict:
    """Cancel an order and put its simple-product units back on sale.

    The status change and the restock commit together.
    """

    def cancel(session):
        order = store.get_order(order_id, session=session)
        if order is None:
            raise NotFound("Order", order_id)
        _authorize(order, acting_user, "cancel")
        if order["order_status"] == "delivered":
            raise InvalidState("Cannot cancel a delivered order")
        if order["order_status"] == "cancelled":
            raise InvalidState("Order is already cancelled")

        updated = store.update_order(order_id, {"order_status": "cancelled"}, session=session)
        for item in order["items"]:
            inventory.return_stock(store, item["product_id"], item["quantity"], order_id, session=session)
        return updated

    order = store.run_in_transaction(cancel)
    logger.info("Order %s cancelled by user %s", order_id, acting_user["id"])
    return order


def set_order_status(store, order_id: str, status: str, acting_user: dict) -> dict:
    if not is_admin(acting_user):
        raise Forbidden("Admin only")
    if status not in ADMIN_ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    order = store.get_order(order_id)
    if order is None:
        raise NotFound("Order", order_id)
    if order["order_status"] == status:
        return order
    if status == "cancelled":
        return cancel_order(store, order_id, acting_user)
    if order["order_status"] in TERMINAL_STATUSES:
        raise InvalidState(f"Order is already {order['order_status']}")
    updated = store.update_order(order_id, {"order_status": status})
    logger.info("Order %s moved from %s to %s", order_id, order["order_status"], status)
    return updated


def mark_payment_status(store, payment_intent_id: str, status: str) -> Optional[dict]:
    """Set the payment status of the order owning payment_intent_id.

    Setting the status the order already has changes nothing, so a
    redelivered webhook event is harmless. A paid order only moves to
    refunded, and a refunded one never moves. Returns None when no order
    matches.
    """
    if status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {status}")
    order = store.find_order_by_payment_intent(payment_intent_id)
    if order is None:
        return None
    if order["payment_status"] == status:
        return order
    if order["payment_status"] == "refunded" or (order["payment_status"] == "paid" and status != "refunded"):
        # events can arrive out of order; a settled payment only moves to refunded
        logger.info("Ignoring %s for %s order %s", status, order["payment_status"], order["id"])
        return order
    updated = store.update_order(order["id"], {"payment_status": status})
    logger.info("Order %s payment %s -> %s", order["id"], order["payment_status"], status)
    return updated
