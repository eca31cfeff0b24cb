"""
rules.py
========
Validity filter and scope matcher shared by every rule family.

A rule is usable at ``now`` iff it is active and ``now`` falls inside the
half-open window [valid_from, valid_until). A missing bound is open.

Scope matching:
- Deals carry a plain product list.
- Promotions and coupons carry scope 'all' | 'categories' | 'products';
  at cart level a rule matches when at least one line is in scope.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from schemas import ScopeKind


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (as SQLite hands them back) are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def has_started(rule, now: datetime) -> bool:
    start = as_utc(rule.valid_from)
    return start is None or start <= as_utc(now)


def has_expired(rule, now: datetime) -> bool:
    end = as_utc(rule.valid_until)
    return end is not None and as_utc(now) >= end


def is_usable(rule, now: datetime) -> bool:
    return bool(rule.is_active) and has_started(rule, now) and not has_expired(rule, now)


def matches_product(rule, product_id: str, category_id: Optional[str] = None) -> bool:
    """Does ``rule`` cover this product?"""
    product_id = str(product_id)
    scope = getattr(rule, "scope", None)

    # Deals: product membership only
    if scope is None:
        return product_id in set(rule.product_ids)

    if scope == ScopeKind.all:
        return True
    if scope == ScopeKind.categories:
        return category_id is not None and str(category_id) in set(rule.category_ids)
    if scope == ScopeKind.products:
        return product_id in set(rule.product_ids)
    return False


def matches_cart(rule, lines: Iterable) -> bool:
    """At least one cart line is in the rule's scope."""
    return any(matches_product(rule, line.product_id, line.category_id) for line in lines)


def eligible_subtotal(rule, lines: Iterable) -> float:
    """Sum of ``line_total`` over the lines the rule covers."""
    return sum(
        line.line_total for line in lines if matches_product(rule, line.product_id, line.category_id)
    )
