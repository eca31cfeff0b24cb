"""
store.py
========
Read side of the rule store: turns ORM rows into immutable snapshots for the
engines, and builds the admin listing queries.
"""

import math
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

import models
from coupon_engine import normalize_code
from rules import as_utc
from schemas import CouponRule, DealRule, PromotionRule, RuleSort, RuleStatus


def _window_filters(model, now: datetime):
    now = as_utc(now)
    return and_(
        or_(model.valid_from.is_(None), model.valid_from <= now),
        or_(model.valid_until.is_(None), model.valid_until > now),
    )


def _active_candidates(db: Session, model, now: datetime):
    # Coarse pre-filter; rules.is_usable stays the authority on usability.
    stmt = select(model).where(model.is_active.is_(True)).where(_window_filters(model, now))
    return db.execute(stmt).scalars().all()


def load_deals(db: Session, now: datetime) -> List[DealRule]:
    return [DealRule.model_validate(row) for row in _active_candidates(db, models.Deal, now)]


def load_promotions(db: Session, now: datetime) -> List[PromotionRule]:
    return [PromotionRule.model_validate(row) for row in _active_candidates(db, models.Promotion, now)]


def load_coupons_by_code(db: Session, code: str) -> List[CouponRule]:
    """Snapshot of the coupon carrying ``code`` (empty list when unknown)."""
    code = normalize_code(code)
    if not code:
        return []
    stmt = select(models.Coupon).where(func.upper(models.Coupon.code) == code)
    return [CouponRule.model_validate(row) for row in db.execute(stmt).scalars().all()]


def code_exists(db: Session, code: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(models.Coupon.id).where(func.upper(models.Coupon.code) == normalize_code(code))
    if exclude_id is not None:
        stmt = stmt.where(models.Coupon.id != exclude_id)
    return db.execute(stmt).first() is not None


def list_rules(
    db: Session,
    model,
    now: datetime,
    status: RuleStatus = RuleStatus.all,
    q: Optional[str] = None,
    sort: RuleSort = RuleSort.newest,
    page: int = 1,
    limit: int = 20,
) -> Tuple[list, dict]:
    """Filtered, sorted page of rules plus pagination info."""
    stmt = select(model)

    query = (q or "").strip()
    if query:
        pattern = f"%{query}%"
        if model is models.Coupon:
            stmt = stmt.where(or_(model.code.ilike(pattern), model.name.ilike(pattern)))
        else:
            stmt = stmt.where(model.name.ilike(pattern))

    if status == RuleStatus.active:
        stmt = stmt.where(model.is_active.is_(True)).where(_window_filters(model, now))
    elif status == RuleStatus.inactive:
        stmt = stmt.where(model.is_active.is_(False))
    elif status == RuleStatus.expired:
        stmt = stmt.where(model.valid_until.is_not(None)).where(model.valid_until <= as_utc(now))

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    if sort == RuleSort.oldest:
        order = [model.created_at.asc(), model.id.asc()]
    elif sort == RuleSort.priority and hasattr(model, "priority"):
        order = [model.priority.desc(), model.created_at.desc(), model.id.desc()]
    else:
        order = [model.created_at.desc(), model.id.desc()]

    rows = db.execute(stmt.order_by(*order).offset((page - 1) * limit).limit(limit)).scalars().all()
    pagination = {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}
    return rows, pagination
