"""
coupon_engine.py
================
Coupon validation for a deal-priced cart.

Checks run in a fixed order and stop at the first failure, so a given cart
always gets the same, specific reason:

1. not_found                    - no coupon with the normalized code
2. inactive                     - kill-switch off
3. not_started                  - now < valid_from
4. expired                      - now >= valid_until
5. usage_limit_exceeded         - used_count >= usage_limit
6. per_customer_limit_exceeded  - customer already used it usage_limit_per_customer times
7. below_min_order              - items_subtotal < min_order_amount
8. out_of_scope                 - no cart line in the coupon's scope

On success the discount is computed against the subtotal of the in-scope
lines (items_subtotal for scope "all") and capped at
max_discount_amount. Validation never mutates anything; the usage budget is
consumed separately by redemption.commit_redemption.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from pricing import discount_amount, round_money
from rules import eligible_subtotal, has_expired, has_started, matches_cart
from schemas import CouponError, CouponRule, CouponValidation, PricedCart

logger = logging.getLogger(__name__)

MESSAGES = {
    CouponError.not_found: "Invalid coupon",
    CouponError.inactive: "Invalid coupon",
    CouponError.not_started: "Coupon is not active yet",
    CouponError.expired: "Coupon expired",
    CouponError.usage_limit_exceeded: "Coupon usage limit reached",
    CouponError.per_customer_limit_exceeded: "Coupon usage limit reached",
    CouponError.below_min_order: "Min order {min_order:.2f}",
    CouponError.out_of_scope: "Coupon is not applicable to your cart",
}

CUSTOMER_REQUIRED_MESSAGE = "Enter email to apply this coupon"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def find_coupon(code: str, coupons: Iterable[CouponRule]) -> Optional[CouponRule]:
    code = normalize_code(code)
    if not code:
        return None
    for coupon in coupons:
        if normalize_code(coupon.code) == code:
            return coupon
    return None


def _reject(code: str, error: CouponError, coupon: Optional[CouponRule] = None, message: Optional[str] = None):
    if message is None:
        min_order = coupon.min_order_amount if coupon is not None else 0.0
        message = MESSAGES[error].format(min_order=min_order or 0.0)
    logger.debug("Coupon %s rejected: %s", code, error.value)
    return CouponValidation(code=code, ok=False, coupon=coupon, error=error, message=message)


def validate_coupon(
    code: str,
    cart: PricedCart,
    customer_id: Optional[str],
    coupons: Iterable[CouponRule],
    now: datetime,
    customer_redemptions: int = 0,
) -> CouponValidation:
    """
    Validate ``code`` against ``cart`` at ``now``.

    ``customer_redemptions`` is how many times ``customer_id`` has already
    redeemed this coupon; the caller looks it up in order history.
    """
    normalized = normalize_code(code)
    coupon = find_coupon(normalized, coupons)

    if coupon is None:
        return _reject(normalized, CouponError.not_found)
    if not coupon.is_active:
        return _reject(normalized, CouponError.inactive, coupon)
    if not has_started(coupon, now):
        return _reject(normalized, CouponError.not_started, coupon)
    if has_expired(coupon, now):
        return _reject(normalized, CouponError.expired, coupon)
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return _reject(normalized, CouponError.usage_limit_exceeded, coupon)

    per_customer = coupon.usage_limit_per_customer
    if per_customer is not None and per_customer > 0:
        if not customer_id:
            return _reject(
                normalized, CouponError.per_customer_limit_exceeded, coupon, message=CUSTOMER_REQUIRED_MESSAGE
            )
        if customer_redemptions >= per_customer:
            return _reject(normalized, CouponError.per_customer_limit_exceeded, coupon)

    subtotal = round_money(cart.items_subtotal)
    if subtotal < round_money(coupon.min_order_amount or 0):
        return _reject(normalized, CouponError.below_min_order, coupon)
    if not matches_cart(coupon, cart.lines):
        return _reject(normalized, CouponError.out_of_scope, coupon)

    base = round_money(eligible_subtotal(coupon, cart.lines))
    amount = discount_amount(base, coupon.kind, coupon.value, coupon.max_discount_amount)
    return CouponValidation(code=coupon.code, ok=True, coupon=coupon, discount=amount)
