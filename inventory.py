"""Stock and price helpers for product documents.

Stock lives on the product itself (`quantity`/`in_stock`). Every change made
by checkout or cancellation also appends a row to the stock movement ledger
so a product's history can be replayed.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from database import as_utc
from errors import InsufficientStock, NotFound, OutOfStock
from schemas import StockMovement

logger = logging.getLogger(__name__)


def available_quantity(product: dict) -> int:
    if product.get("product_type") == "variable":
        return sum(opt.get("quantity", 0) for opt in product.get("variation_options", []))
    return product.get("quantity", 0)


def derive_in_stock(product: dict) -> bool:
    return available_quantity(product) > 0


def is_in_stock(product: dict) -> bool:
    return bool(product.get("in_stock", derive_in_stock(product)))


def unit_price(product: dict, now: Optional[datetime] = None) -> float:
    """Price a customer pays for one unit right now."""
    sale_price = product.get("sale_price")
    if not product.get("on_sale") or sale_price is None:
        return float(product["price"])
    now = now or datetime.now(timezone.utc)
    start, end = as_utc(product.get("sale_start")), as_utc(product.get("sale_end"))
    if (start and now < start) or (end and now > end):
        return float(product["price"])
    return float(sale_price)


def check_available(product: Optional[dict], quantity: int, product_id: str = None) -> dict:
    """Raise the matching stock error unless quantity units can be sold."""
    if product is None:
        raise NotFound("Product", product_id)
    if not is_in_stock(product):
        raise OutOfStock(product.get("name", product.get("id")))
    available = available_quantity(product)
    if available < quantity:
        raise InsufficientStock(product.get("name", product.get("id")), quantity, available)
    return product


def take_stock(store, product: dict, quantity: int, session=None) -> bool:
    """Decrement a simple product's stock inside the caller's transaction.

    Returns False for variable products, whose stock is kept on the
    variation options and is left untouched here.
    """
    if product.get("product_type") != "simple":
        return False
    updated = store.decrement_stock(product["id"], quantity, session=session)
    if updated is None:
        # another checkout took the units between the read and the write
        latest = store.get_product(product["id"], session=session)
        raise InsufficientStock(
            product.get("name", product["id"]), quantity, available_quantity(latest or {})
        )
    return True


def return_stock(store, product_id: str, quantity: int, order_id: str, session=None):
    updated = store.restore_stock(product_id, quantity, session=session)
    if updated is None:
        logger.info("Skipping restock of %s: product missing or not simple", product_id)
        return None
    record_movement(store, product_id, quantity, "cancellation", order_id, session=session)
    return updated


def record_movement(store, product_id: str, delta: int, reason: str, order_id: str, session=None) -> str:
    movement = StockMovement(product_id=product_id, delta=delta, reason=reason, order_id=order_id)
    return store.add_stock_movement(movement.model_dump(), session=session)
