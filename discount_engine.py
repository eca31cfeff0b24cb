"""
discount_engine.py
==================
Deal and promotion resolution plus order total aggregation.

Every function here is pure: rules come in as immutable snapshots and the
evaluation instant ``now`` is always passed by the caller.

Implemented:
------------
1. Deals (per product):
   - Usable deals claiming the product are ranked by priority (desc), then
     creation time (desc), then id (desc). The first one wins.
   - Resolution is idempotent; input ordering never changes the winner.

2. Promotions (per cart):
   - Usable promotions with at least one in-scope line and
     min_order_amount <= items_subtotal are ranked like deals.
   - Discount is computed against the deal-adjusted items_subtotal and capped
     at max_discount_amount. The first ranked promotion yielding a positive
     discount is applied; promotions never stack.

3. Order totals:
   - discount_amount = min(items_subtotal, promotion + coupon).
   - total = items_subtotal - discount_amount + shipping + tax, each term
     rounded to cents first so the breakdown reconciles with the total.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pricing import apply_discount, deal_label, discount_amount, round_money
from rules import as_utc, is_usable, matches_cart, matches_product
from schemas import (
    Cart, DealProduct, DealRule, DealSummary, OrderTotals, PricedCart, PricedLine,
    Product, PromotionMatch, PromotionRule,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _rank_key(rule):
    return (rule.priority, as_utc(rule.created_at) or _EPOCH, rule.id)


def rank_rules(rules: Iterable) -> list:
    """Highest priority first; most recently created wins ties."""
    return sorted(rules, key=_rank_key, reverse=True)


# ─────────────────────────── Deals ───────────────────────────

def best_deal(product_id, category_id, deals: Iterable[DealRule], now: datetime) -> Optional[DealRule]:
    """Pick at most one usable deal for a product."""
    candidates = [
        d for d in deals
        if is_usable(d, now) and matches_product(d, product_id, category_id)
    ]
    if not candidates:
        return None
    winner = rank_rules(candidates)[0]
    logger.debug("Deal %s wins product %s over %d candidate(s)", winner.id, product_id, len(candidates))
    return winner


def resolve_best_deal_for_product(product: Product, deals: Iterable[DealRule], now: datetime) -> Optional[DealRule]:
    if not product.is_active:
        return None
    return best_deal(product.id, product.category_id, deals, now)


def summarize_deal(deal: DealRule, currency: str = "PKR") -> DealSummary:
    return DealSummary(
        id=deal.id,
        name=deal.name,
        kind=deal.kind,
        value=deal.value,
        priority=deal.priority,
        valid_until=deal.valid_until,
        label=deal_label(deal.kind, deal.value, currency),
    )


def price_cart(cart: Cart, deals: Iterable[DealRule], now: datetime, currency: str = "PKR") -> PricedCart:
    """Attach the winning deal (if any) to each line and compute the subtotal."""
    deals = list(deals)
    priced = []

    for line in cart.lines:
        deal = best_deal(line.product_id, line.category_id, deals, now)
        unit_price = round_money(line.unit_price_original)
        if deal is not None:
            unit_price = apply_discount(line.unit_price_original, deal.kind, deal.value)

        priced.append(PricedLine(
            product_id=line.product_id,
            category_id=line.category_id,
            quantity=line.quantity,
            unit_price_original=line.unit_price_original,
            unit_price_after_deal=unit_price,
            line_total=round_money(unit_price * line.quantity),
            applied_deal_id=deal.id if deal else None,
            deal_label=deal_label(deal.kind, deal.value, currency) if deal else None,
        ))

    items_subtotal = round_money(sum(line.line_total for line in priced))
    return PricedCart(lines=priced, items_subtotal=items_subtotal, customer_id=cart.customer_id)


def list_deal_products(
    products: Iterable[Product],
    deals: Iterable[DealRule],
    now: datetime,
    limit: int = 12,
    category_id: Optional[str] = None,
    currency: str = "PKR",
) -> List[DealProduct]:
    """
    Storefront listing of active products currently claimed by a deal.

    Ordered by the rank of the claiming deal; products keep their input order
    within the same deal.
    """
    deals = list(deals)
    claimed = []

    for position, product in enumerate(products):
        if not product.is_active:
            continue
        if category_id is not None and product.category_id != str(category_id):
            continue
        deal = best_deal(product.id, product.category_id, deals, now)
        if deal is None:
            continue
        claimed.append((position, product, deal))

    claimed.sort(key=lambda item: item[0])
    claimed.sort(key=lambda item: _rank_key(item[2]), reverse=True)

    items = []
    for _, product, deal in claimed[:limit]:
        original = round_money(product.base_price)
        compare_at = original
        if product.compare_at_price is not None and product.compare_at_price > original:
            compare_at = round_money(product.compare_at_price)
        items.append(DealProduct(
            product_id=product.id,
            category_id=product.category_id,
            base_price=original,
            deal_price=apply_discount(original, deal.kind, deal.value),
            compare_at_price=compare_at,
            deal=summarize_deal(deal, currency),
        ))
    return items


# ─────────────────────────── Promotions ───────────────────────────

def resolve_promotion_for_cart(
    cart: PricedCart, promotions: Iterable[PromotionRule], now: datetime
) -> Optional[PromotionMatch]:
    """Pick the single automatic promotion for a deal-priced cart."""
    subtotal = round_money(cart.items_subtotal)
    if subtotal <= 0:
        return None

    candidates = [
        p for p in promotions
        if is_usable(p, now)
        and round_money(p.min_order_amount or 0) <= subtotal
        and matches_cart(p, cart.lines)
    ]

    for promo in rank_rules(candidates):
        amount = discount_amount(subtotal, promo.kind, promo.value, promo.max_discount_amount)
        if amount <= 0:
            continue
        logger.debug("Promotion %s applied: %.2f off %.2f", promo.id, amount, subtotal)
        return PromotionMatch(promotion=promo, discount=amount)

    return None


# ─────────────────────────── Totals ───────────────────────────

def compute_shipping(items_subtotal, discount, flat_amount=0.0, free_above=None) -> float:
    """Flat-rate shipping, waived once the discounted subtotal reaches ``free_above``."""
    subtotal = round_money(items_subtotal)
    if subtotal <= 0:
        return 0.0
    discounted = round_money(max(0.0, subtotal - discount))
    if free_above is not None and discounted >= round_money(free_above):
        return 0.0
    return round_money(max(0.0, flat_amount))


def compute_tax(items_subtotal, discount, rate_percent=0.0) -> float:
    discounted = max(0.0, round_money(items_subtotal) - round_money(discount))
    rate = min(100.0, max(0.0, float(rate_percent)))
    return round_money(discounted * rate / 100)


def aggregate_order_totals(
    cart: PricedCart, promotion_amount=0.0, coupon_amount=0.0, shipping=0.0, tax=0.0
) -> OrderTotals:
    items_subtotal = round_money(sum(round_money(line.line_total) for line in cart.lines))
    promotion_amount = round_money(max(0.0, promotion_amount or 0.0))
    coupon_amount = round_money(max(0.0, coupon_amount or 0.0))
    shipping = round_money(max(0.0, shipping or 0.0))
    tax = round_money(max(0.0, tax or 0.0))

    combined = round_money(promotion_amount + coupon_amount)
    discount = min(items_subtotal, combined)
    total = round_money(items_subtotal - discount + shipping + tax)

    return OrderTotals(
        items_subtotal=items_subtotal,
        promotion_discount_amount=promotion_amount,
        coupon_discount_amount=coupon_amount,
        discount_amount=discount,
        shipping_amount=shipping,
        tax_amount=tax,
        total_amount=total,
    )
