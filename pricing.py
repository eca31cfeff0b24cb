"""
pricing.py
==========
Price Calculator: the single place where a discount is turned into a price.

Deals, promotions and coupons all go through ``apply_discount`` so clamping
and rounding behave the same for every rule family.

Rules:
------
- percent: price = original * (1 - min(100, value) / 100), never below 0.
- fixed:   price = max(0, original - value).
- Negative inputs are treated as 0.
- Results are rounded to 2 decimals, halves away from zero.
"""

from decimal import Decimal, ROUND_HALF_UP

from schemas import DiscountKind

_CENT = Decimal("0.01")


def _to_decimal(amount) -> Decimal:
    # str() keeps the shortest repr, so 0.285 stays 0.285 instead of 0.28499...
    return Decimal(str(amount))


def round_money(amount) -> float:
    """Round to 2 decimal places, halves away from zero."""
    return float(_to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP))


def clamp_percent(value) -> float:
    return min(100.0, max(0.0, float(value)))


def apply_discount(original, kind: DiscountKind, value) -> float:
    """Return the discounted price for ``original``; always >= 0."""
    price = max(_to_decimal(original), Decimal(0))
    magnitude = max(_to_decimal(value), Decimal(0))

    if kind == DiscountKind.percent:
        pct = min(magnitude, Decimal(100))
        result = price * (Decimal(1) - pct / Decimal(100))
    elif kind == DiscountKind.fixed:
        result = price - magnitude
    else:
        raise ValueError(f"Unknown discount kind: {kind!r}")

    return round_money(max(result, Decimal(0)))


def discount_amount(base, kind: DiscountKind, value, cap=None) -> float:
    """
    Amount taken off ``base`` by a rule, optionally capped.

    Computed as base - apply_discount(base, ...) so the amount and the
    discounted price always reconcile to the cent.
    """
    base_amount = round_money(max(float(base), 0.0))
    amount = round_money(base_amount - apply_discount(base_amount, kind, value))
    if cap is not None:
        amount = min(amount, round_money(max(float(cap), 0.0)))
    return amount


def deal_label(kind: DiscountKind, value, currency: str = "PKR") -> str:
    """Short badge text for a deal, e.g. '30% OFF' or 'PKR 100 OFF'."""
    magnitude = int(_to_decimal(max(float(value), 0.0)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if kind == DiscountKind.percent:
        return f"{min(magnitude, 100)}% OFF"
    return f"{currency} {magnitude} OFF"
