"""Coupon evaluation and redemption."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from database import as_utc
from errors import (
    BelowMinimumCartValue,
    CouponExpired,
    CouponUsageExceeded,
    InvalidCoupon,
)

logger = logging.getLogger(__name__)

INACTIVE = "inactive"
EXPIRED = "expired"
NOT_STARTED = "not started"
USAGE_LIMIT_REACHED = "usage limit reached"
ALREADY_USED = "already used"
BELOW_MINIMUM = "below minimum"


@dataclass(frozen=True)
class Evaluation:
    valid: bool
    discount: float = 0.0
    reason: Optional[str] = None


def is_expired(coupon: dict, now: Optional[datetime] = None) -> bool:
    expiry = as_utc(coupon.get("expiry_date"))
    if expiry is None:
        return False
    return expiry < (now or datetime.now(timezone.utc))


def user_usage(coupon: dict, user_id: str) -> int:
    return (coupon.get("user_usage") or {}).get(user_id, 0)


def evaluate(coupon: dict, subtotal: float, user_id: str, now: Optional[datetime] = None) -> Evaluation:
    """Work out what a coupon is worth against a cart subtotal.

    Checks run in a fixed order and the first failing one decides the
    reason. Nothing is written; see `redeem` for consuming a use.
    """
    now = now or datetime.now(timezone.utc)
    if not coupon.get("is_active", True):
        return Evaluation(False, reason=INACTIVE)
    if is_expired(coupon, now):
        return Evaluation(False, reason=EXPIRED)
    start = as_utc(coupon.get("start_date"))
    if start is not None and start > now:
        return Evaluation(False, reason=NOT_STARTED)
    limit = coupon.get("usage_limit")
    if limit is not None and coupon.get("used_count", 0) >= limit:
        return Evaluation(False, reason=USAGE_LIMIT_REACHED)
    if user_usage(coupon, user_id) >= coupon.get("per_user_limit", 1):
        return Evaluation(False, reason=ALREADY_USED)
    if subtotal < (coupon.get("min_cart_value") or 0):
        return Evaluation(False, reason=BELOW_MINIMUM)

    value = coupon.get("discount_value", 0)
    if coupon.get("discount_type") == "percentage":
        discount = subtotal * value / 100
        if coupon.get("max_discount") is not None:
            discount = min(discount, coupon["max_discount"])
    else:
        discount = value
    discount = round(min(discount, subtotal), 2)
    return Evaluation(True, discount=discount)


def raise_for(evaluation: Evaluation, coupon: dict):
    """Turn a failed evaluation into the error reported to the caller."""
    if evaluation.valid:
        return
    code = coupon.get("code")
    if evaluation.reason == EXPIRED:
        raise CouponExpired(code)
    if evaluation.reason == USAGE_LIMIT_REACHED:
        raise CouponUsageExceeded()
    if evaluation.reason == ALREADY_USED:
        raise CouponUsageExceeded("You have already used this coupon")
    if evaluation.reason == BELOW_MINIMUM:
        raise BelowMinimumCartValue(coupon.get("min_cart_value") or 0)
    if evaluation.reason == NOT_STARTED:
        raise InvalidCoupon(f"Coupon not yet valid: {code}")
    raise InvalidCoupon()


def get_by_code(store, code: str) -> dict:
    coupon = store.get_coupon_by_code(code)
    if coupon is None:
        raise InvalidCoupon()
    return coupon


def redeem(store, coupon_id: str, user_id: str, session=None):
    """Consume one use of the coupon for user_id.

    Must run inside the order transaction: a failed guard raises and takes
    the order down with it.
    """
    if not store.redeem_coupon(coupon_id, user_id, session=session):
        raise CouponUsageExceeded()
    logger.info("Redeemed coupon %s for user %s", coupon_id, user_id)
