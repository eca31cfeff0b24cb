"""
redemption.py
=============
Consumes coupon usage budget at order confirmation.

The counter is bumped by a single conditional UPDATE
(``used_count = used_count + 1 WHERE id = ? AND used_count < usage_limit``),
never read-modify-written in Python, so concurrent confirmations across
processes cannot oversell a coupon. A lost race is a business outcome and is
reported as UsageLimitExceeded; it is not retried.
"""

import logging
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Coupon, CouponRedemption

logger = logging.getLogger(__name__)


class RedemptionError(Exception):
    def __init__(self, coupon_id: int, message: str):
        super().__init__(message)
        self.coupon_id = coupon_id
        self.message = message


class UsageLimitExceeded(RedemptionError):
    def __init__(self, coupon_id: int):
        super().__init__(coupon_id, "Coupon usage limit reached")


class CouponNotFound(RedemptionError):
    def __init__(self, coupon_id: int):
        super().__init__(coupon_id, f"Coupon with id={coupon_id} not found")


def _normalize_customer(customer_id: Optional[str]) -> Optional[str]:
    if customer_id is None:
        return None
    return str(customer_id).strip().lower() or None


def count_customer_redemptions(db: Session, coupon_id: int, customer_id: Optional[str]) -> int:
    """How many units of ``coupon_id`` this customer has already consumed."""
    customer_id = _normalize_customer(customer_id)
    if customer_id is None:
        return 0
    stmt = (
        select(func.count(CouponRedemption.id))
        .where(CouponRedemption.coupon_id == coupon_id)
        .where(CouponRedemption.customer_id == customer_id)
    )
    return db.execute(stmt).scalar_one()


def commit_redemption(
    db: Session, coupon_id: int, customer_id: Optional[str] = None, order_ref: Optional[str] = None
) -> int:
    """
    Atomically consume one unit of the coupon's budget.

    Returns the coupon's used_count after the increment. Raises
    UsageLimitExceeded when the budget is already spent (including when a
    concurrent order won the last unit) and CouponNotFound for unknown ids.
    The redemption row is written in the same transaction as the increment.
    """
    stmt = (
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .where(or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )

    try:
        result = db.execute(stmt)
        if result.rowcount != 1:
            db.rollback()
            exists = db.execute(select(Coupon.id).where(Coupon.id == coupon_id)).scalar_one_or_none()
            if exists is None:
                raise CouponNotFound(coupon_id)
            logger.warning("Coupon %s exhausted; redemption refused for order %s", coupon_id, order_ref)
            raise UsageLimitExceeded(coupon_id)

        db.add(CouponRedemption(
            coupon_id=coupon_id,
            customer_id=_normalize_customer(customer_id),
            order_ref=order_ref,
        ))
        db.flush()
        used_count = db.execute(select(Coupon.used_count).where(Coupon.id == coupon_id)).scalar_one()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Redemption of coupon %s failed", coupon_id)
        raise

    logger.info("Coupon %s redeemed (used_count=%s, order=%s)", coupon_id, used_count, order_ref)
    return used_count
