from sqlalchemy import (
    Column, Integer, String, Float, JSON, DateTime, Boolean, ForeignKey, CheckConstraint,
    Enum as SAEnum,
)
from sqlalchemy.sql import func
from database import Base
from schemas import DiscountKind, ScopeKind


def _enum_column(enum_cls, **kwargs):
    return Column(
        SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        **kwargs,
    )


class Deal(Base):
    """
    Merchandising discount shown as a sale price on specific products.

    product_ids: JSON list of product id strings the deal claims.
    Both window bounds are required; the upper bound is exclusive.
    """
    __tablename__ = "deals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    kind = _enum_column(DiscountKind, nullable=False)
    value = Column(Float, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    product_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Promotion(Base):
    """
    Store-wide discount applied automatically to qualifying carts.

    scope: 'all' | 'categories' | 'products', narrowed by category_ids / product_ids.
    """
    __tablename__ = "promotions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    kind = _enum_column(DiscountKind, nullable=False)
    value = Column(Float, nullable=False)
    min_order_amount = Column(Float, nullable=False, default=0)
    max_discount_amount = Column(Float, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    scope = _enum_column(ScopeKind, nullable=False, default=ScopeKind.all)
    category_ids = Column(JSON, nullable=False, default=list)
    product_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Coupon(Base):
    """
    Customer-entered discount code with a finite usage budget.

    code is stored trimmed and upper-cased. used_count is only ever changed by
    redemption.commit_redemption through a conditional UPDATE.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_coupons_used_count_within_limit",
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(40), nullable=False, unique=True, index=True)
    name = Column(String(120), nullable=True)
    kind = _enum_column(DiscountKind, nullable=False)
    value = Column(Float, nullable=False)
    min_order_amount = Column(Float, nullable=False, default=0)
    max_discount_amount = Column(Float, nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_limit_per_customer = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    scope = _enum_column(ScopeKind, nullable=False, default=ScopeKind.all)
    category_ids = Column(JSON, nullable=False, default=list)
    product_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class CouponRedemption(Base):
    """One consumed unit of a coupon's budget, written with the counter bump."""
    __tablename__ = "coupon_redemptions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String(120), nullable=True, index=True)
    order_ref = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
