"""Cart-to-order checkout.

`create_order` turns the caller's cart into an order inside one store
transaction: every line is re-read and re-validated against live stock, the
total is priced from current product prices and the attached coupon, stock is
decremented, the coupon is redeemed and the cart is emptied. Nothing survives
an abort. A card payment intent is the only effect outside the store; it is
cancelled again if the transaction does not commit.
"""
import logging
import secrets
from dataclasses import dataclass
from typing import List, Optional

import carts
import coupons
import inventory
import payments
from database import now_utc
from errors import EmptyCart, InvalidCoupon, NotFound
from schemas import CARD_PAYMENT_METHODS, Address, Order, OrderMetadata

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    order: dict
    client_secret: Optional[str] = None


def initial_statuses(payment_method: str):
    """(payment_status, order_status) a new order starts in."""
    if payment_method == "COD":
        return "unpaid", "pending"
    return "pending", "processing"


def new_order_number() -> str:
    return f"ORD-{now_utc():%Y%m%d}-{secrets.token_hex(4).upper()}"


def find_address(user: dict, address_id: str) -> dict:
    address = next((a for a in user.get("addresses", []) if a.get("id") == address_id), None)
    if address is None:
        raise NotFound("Address", address_id)
    # copied so later edits to the address book leave the order untouched
    return Address(**address).model_dump()


def _release_intents(gateway, intent_ids: List[str]):
    while intent_ids:
        intent_id = intent_ids.pop()
        try:
            gateway.cancel_intent(intent_id)
            logger.info("Cancelled payment intent %s after aborted checkout", intent_id)
        except Exception:
            logger.exception("Could not cancel orphaned payment intent %s", intent_id)


def _place_order(store, gateway, session, user_id, shipping_snapshot, payment_method, metadata, intents):
    cart = store.get_cart(user_id, session=session)
    if not cart or not cart["items"]:
        raise EmptyCart()

    lines = []
    taken = []
    subtotal = 0.0
    item_shipping = 0.0
    # sequential: a repeated product must see the previous line's decrement
    for item in cart["items"]:
        product = store.get_product(item["product_id"], session=session)
        inventory.check_available(product, item["quantity"], item["product_id"])
        price = inventory.unit_price(product)
        fee = product.get("shipping_fee") or 0
        lines.append(
            {
                "product_id": product["id"],
                "name": product["name"],
                "price": price,
                "quantity": item["quantity"],
                "shipping_fee": fee,
                "image": product.get("image"),
            }
        )
        subtotal += price * item["quantity"]
        item_shipping += fee * item["quantity"]
        if inventory.take_stock(store, product, item["quantity"], session=session):
            taken.append((product["id"], item["quantity"]))
    subtotal = round(subtotal, 2)

    coupon = None
    discount = 0.0
    if cart.get("coupon_id"):
        coupon = store.get_coupon(cart["coupon_id"], session=session)
        if coupon is None:
            raise InvalidCoupon()
        evaluation = coupons.evaluate(coupon, subtotal, user_id)
        coupons.raise_for(evaluation, coupon)
        discount = evaluation.discount

    shipping_fee, cod_fee = carts.compute_fees(item_shipping, cart["shipping_method"], payment_method)
    total_amount = carts.final_total(subtotal, discount, shipping_fee, cod_fee)
    payment_status, order_status = initial_statuses(payment_method)

    order = Order(
        user_id=user_id,
        order_number=new_order_number(),
        items=lines,
        shipping_address=shipping_snapshot,
        payment_method=payment_method,
        payment_status=payment_status,
        order_status=order_status,
        shipping_method=cart["shipping_method"],
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        cod_fee=cod_fee,
        discount=discount,
        coupon_id=coupon["id"] if coupon else None,
        coupon_code=coupon["code"] if coupon else None,
        total_amount=total_amount,
        metadata=metadata,
    )

    client_secret = None
    if payment_method in CARD_PAYMENT_METHODS:
        intent = gateway.create_intent(
            total_amount,
            payments.intent_shipping(shipping_snapshot),
            {
                "user_id": user_id,
                "order_number": order.order_number,
                "order_type": "product-order",
                **order.metadata.model_dump(exclude_defaults=True),
            },
        )
        intents.append(intent.id)
        order.payment_intent_id = intent.id
        client_secret = intent.client_secret

    order_id = store.insert_order(order.model_dump(), session=session)
    for product_id, quantity in taken:
        inventory.record_movement(store, product_id, -quantity, "checkout", order_id, session=session)
    if coupon:
        coupons.redeem(store, coupon["id"], user_id, session=session)
    store.save_cart(carts.empty(cart), session=session)
    return order_id, client_secret


def create_order(
    store,
    gateway,
    user_id: str,
    address_id: str,
    payment_method: str = "COD",
    metadata: Optional[dict] = None,
) -> CheckoutResult:
    """Check out the user's cart as a single atomic unit."""
    user = store.get_user(user_id)
    if user is None:
        raise NotFound("User", user_id)
    shipping_snapshot = find_address(user, address_id)
    metadata = OrderMetadata(**(metadata or {}))

    cart = store.get_cart(user_id)
    if not cart or not cart["items"]:
        raise EmptyCart()

    intents: List[str] = []

    def attempt(session):
        try:
            return _place_order(
                store, gateway, session, user_id, shipping_snapshot, payment_method, metadata, intents
            )
        except Exception:
            _release_intents(gateway, intents)
            raise

    logger.info("Checkout started for user %s (%d lines, %s)", user_id, len(cart["items"]), payment_method)
    try:
        order_id, client_secret = store.run_in_transaction(attempt)
    except Exception as e:
        _release_intents(gateway, intents)
        logger.warning("Checkout aborted for user %s: %s", user_id, e)
        raise

    order = store.get_order(order_id)
    logger.info("Order %s (%s) committed for user %s", order_id, order["order_number"], user_id)
    return CheckoutResult(order=order, client_secret=client_secret)
