"""Per-user shopping cart.

A cart holds `{product_id, quantity}` lines and an optional coupon. Totals
are never trusted from storage: `recompute` re-prices every line from the
live product documents whenever the cart is read or changed.
"""
import logging
from typing import Callable, Optional

import config
import coupons
import inventory
from errors import NotFound, ValidationError
from schemas import Cart

logger = logging.getLogger(__name__)

SHIPPING_METHODS = ("standard", "express")
PAYMENT_METHODS = {"stripe": "stripe", "cod": "COD"}


def new_cart(user_id: str) -> dict:
    return Cart(user_id=user_id).model_dump()


def compute_fees(item_shipping: float, shipping_method: str, payment_method: str):
    """Return (shipping_fee, cod_fee) for a non-empty basket."""
    shipping_fee = item_shipping
    if shipping_method == "express":
        shipping_fee += config.EXPRESS_SHIPPING_FEE
    cod_fee = config.COD_FEE if payment_method == "COD" else 0.0
    return round(shipping_fee, 2), round(cod_fee, 2)


def final_total(total: float, discount: float, shipping_fee: float, cod_fee: float) -> float:
    return round(max(total - discount, 0) + shipping_fee + cod_fee, 2)


def recompute(store, cart: dict, session=None) -> dict:
    """Refresh the derived totals of cart in place and return it.

    A coupon that no longer applies is detached quietly instead of failing.
    """
    total = 0.0
    item_shipping = 0.0
    for item in cart["items"]:
        product = store.get_product(item["product_id"], session=session)
        if product is None:
            continue
        total += inventory.unit_price(product) * item["quantity"]
        item_shipping += (product.get("shipping_fee") or 0) * item["quantity"]
    total = round(total, 2)

    discount = 0.0
    if cart.get("coupon_id"):
        coupon = store.get_coupon(cart["coupon_id"], session=session)
        evaluation = coupons.evaluate(coupon, total, cart["user_id"]) if coupon else None
        if evaluation is not None and evaluation.valid:
            discount = evaluation.discount
        else:
            logger.info(
                "Detaching coupon %s from cart of user %s (%s)",
                cart["coupon_id"],
                cart["user_id"],
                evaluation.reason if evaluation else "missing",
            )
            cart["coupon_id"] = None

    if cart["items"]:
        shipping_fee, cod_fee = compute_fees(item_shipping, cart["shipping_method"], cart["payment_method"])
    else:
        shipping_fee, cod_fee = 0.0, 0.0

    cart["total"] = total
    cart["discount"] = discount
    cart["shipping_fee"] = shipping_fee
    cart["cod_fee"] = cod_fee
    cart["final_total"] = final_total(total, discount, shipping_fee, cod_fee)
    return cart


def _save(store, cart: dict, session=None) -> dict:
    return store.save_cart(recompute(store, cart, session=session), session=session)


def _mutate(store, user_id: str, change: Callable, create: bool = False) -> dict:
    """Apply change(cart, session) to the user's cart and save it in one transaction.

    The cart is read inside the transaction, so concurrent mutations of the
    same cart serialize instead of overwriting each other's lines.
    """

    def attempt(session):
        cart = store.get_cart(user_id, session=session)
        if cart is None:
            if not create:
                raise NotFound("Cart")
            cart = new_cart(user_id)
        change(cart, session)
        return _save(store, cart, session=session)

    return store.run_in_transaction(attempt)


def _find_item(cart: dict, product_id: str) -> Optional[dict]:
    return next((i for i in cart["items"] if i["product_id"] == product_id), None)


def get_cart(store, user_id: str) -> dict:
    if store.get_cart(user_id) is None:
        return new_cart(user_id)
    return _mutate(store, user_id, lambda cart, session: None)


def add_item(store, user_id: str, product_id: str, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = store.get_product(product_id)
    inventory.check_available(product, quantity, product_id)

    def change(cart, session):
        existing = _find_item(cart, product_id)
        if existing:
            # the combined quantity is validated again at checkout
            existing["quantity"] += quantity
        else:
            cart["items"].append({"product_id": product_id, "quantity": quantity})

    return _mutate(store, user_id, change, create=True)


def set_item_quantity(store, user_id: str, product_id: str, quantity: int) -> dict:
    def change(cart, session):
        item = _find_item(cart, product_id)
        if item is None:
            raise NotFound("Product in cart", product_id)
        if quantity <= 0:
            cart["items"] = [i for i in cart["items"] if i["product_id"] != product_id]
        else:
            inventory.check_available(store.get_product(product_id, session=session), quantity, product_id)
            item["quantity"] = quantity

    return _mutate(store, user_id, change)


def remove_item(store, user_id: str, product_id: str) -> dict:
    if store.get_cart(user_id) is None:
        return new_cart(user_id)

    def change(cart, session):
        cart["items"] = [i for i in cart["items"] if i["product_id"] != product_id]

    return _mutate(store, user_id, change)


def empty(cart: dict) -> dict:
    cart["items"] = []
    cart["coupon_id"] = None
    cart["total"] = 0.0
    cart["discount"] = 0.0
    cart["shipping_fee"] = 0.0
    cart["cod_fee"] = 0.0
    cart["final_total"] = 0.0
    return cart


def clear(store, user_id: str) -> dict:
    if store.get_cart(user_id) is None:
        return new_cart(user_id)
    return _mutate(store, user_id, lambda cart, session: empty(cart))


def apply_coupon(store, user_id: str, code: str) -> dict:
    """Attach a coupon after checking it against the current total.

    Application never consumes a use; that happens only at checkout.
    """
    coupon = coupons.get_by_code(store, code)

    def change(cart, session):
        recompute(store, cart, session=session)
        coupons.raise_for(coupons.evaluate(coupon, cart["total"], user_id), coupon)
        cart["coupon_id"] = coupon["id"]

    return _mutate(store, user_id, change)


def remove_coupon(store, user_id: str) -> dict:
    def change(cart, session):
        cart["coupon_id"] = None

    return _mutate(store, user_id, change)


def set_shipping_method(store, user_id: str, method: str) -> dict:
    if method not in SHIPPING_METHODS:
        raise ValidationError(f"Invalid shipping method: {method}")

    def change(cart, session):
        cart["shipping_method"] = method

    return _mutate(store, user_id, change)


def set_payment_method(store, user_id: str, method: str) -> dict:
    normalised = PAYMENT_METHODS.get((method or "").lower())
    if normalised is None:
        raise ValidationError(f"Invalid payment method: {method}")

    def change(cart, session):
        cart["payment_method"] = normalised

    return _mutate(store, user_id, change)


def present(store, cart: dict) -> dict:
    """Cart as returned by the API, with each line resolved to its product."""
    lines = []
    for item in cart["items"]:
        product = store.get_product(item["product_id"])
        if product is None:
            continue
        lines.append(
            {
                "product_id": item["product_id"],
                "name": product.get("name"),
                "price": inventory.unit_price(product),
                "quantity": item["quantity"],
                "shipping_fee": product.get("shipping_fee", 0),
                "image": product.get("image"),
                "in_stock": inventory.is_in_stock(product),
            }
        )
    view = {k: v for k, v in cart.items() if k not in ("items", "created_at", "updated_at")}
    view["items"] = lines
    return view
