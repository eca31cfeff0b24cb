from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Annotated, Optional, List, Tuple
from datetime import datetime, timezone
from enum import Enum


# ─────────────── Enums ───────────────

class DiscountKind(str, Enum):
    percent = "percent"
    fixed = "fixed"


class ScopeKind(str, Enum):
    all = "all"
    categories = "categories"
    products = "products"


class RuleStatus(str, Enum):
    all = "all"
    active = "active"
    inactive = "inactive"
    expired = "expired"


class RuleSort(str, Enum):
    priority = "priority"
    newest = "newest"
    oldest = "oldest"


class CouponError(str, Enum):
    """Coupon rejection reasons, in the order they are checked."""
    not_found = "not_found"
    inactive = "inactive"
    not_started = "not_started"
    expired = "expired"
    usage_limit_exceeded = "usage_limit_exceeded"
    per_customer_limit_exceeded = "per_customer_limit_exceeded"
    below_min_order = "below_min_order"
    out_of_scope = "out_of_scope"


PRIORITY_BOUND = 100000


def _to_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# Incoming timestamps are normalized to UTC; naive values are taken as UTC.
UTCDateTime = Annotated[datetime, AfterValidator(_to_utc)]


def _stringify_ids(v):
    if v is None:
        return []
    return [str(x).strip() for x in v if str(x).strip()]


# ─────────────── Rule snapshots (read-only views of stored rules) ───────────────

class _Snapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class DealRule(_Snapshot):
    id: int
    name: str
    kind: DiscountKind
    value: float
    priority: int = 0
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    product_ids: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None


class PromotionRule(_Snapshot):
    id: int
    name: str
    kind: DiscountKind
    value: float
    min_order_amount: float = 0.0
    max_discount_amount: Optional[float] = None
    priority: int = 0
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    scope: ScopeKind = ScopeKind.all
    category_ids: Tuple[str, ...] = ()
    product_ids: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None


class CouponRule(_Snapshot):
    id: int
    code: str
    name: Optional[str] = None
    kind: DiscountKind
    value: float
    min_order_amount: float = 0.0
    max_discount_amount: Optional[float] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_limit_per_customer: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    scope: ScopeKind = ScopeKind.all
    category_ids: Tuple[str, ...] = ()
    product_ids: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None


# ─────────────── Catalog / cart inputs ───────────────

class Product(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    id: str
    base_price: float
    category_id: Optional[str] = None
    is_active: bool = True
    compare_at_price: Optional[float] = None

    @field_validator("id", "category_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @field_validator("base_price")
    @classmethod
    def price_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Price cannot be negative")
        return v


class CartLine(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    product_id: str
    category_id: Optional[str] = None
    quantity: int
    unit_price_original: float

    @field_validator("product_id", "category_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    @field_validator("unit_price_original")
    @classmethod
    def price_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Price cannot be negative")
        return v


class Cart(BaseModel):
    lines: List[CartLine]
    customer_id: Optional[str] = None

    @field_validator("customer_id", mode="before")
    @classmethod
    def blank_customer_is_anonymous(cls, v):
        if v is None:
            return None
        v = str(v).strip().lower()
        return v or None


# ─────────────── Engine outputs ───────────────

class PricedLine(BaseModel):
    product_id: str
    category_id: Optional[str] = None
    quantity: int
    unit_price_original: float
    unit_price_after_deal: float
    line_total: float
    applied_deal_id: Optional[int] = None
    deal_label: Optional[str] = None


class PricedCart(BaseModel):
    lines: List[PricedLine]
    items_subtotal: float
    customer_id: Optional[str] = None


class PromotionMatch(BaseModel):
    promotion: PromotionRule
    discount: float


class CouponValidation(BaseModel):
    code: str
    ok: bool
    coupon: Optional[CouponRule] = None
    discount: float = 0.0
    error: Optional[CouponError] = None
    message: Optional[str] = None


class OrderTotals(BaseModel):
    items_subtotal: float
    promotion_discount_amount: float
    coupon_discount_amount: float
    discount_amount: float
    shipping_amount: float
    tax_amount: float
    total_amount: float


class DealSummary(BaseModel):
    id: int
    name: str
    kind: DiscountKind
    value: float
    priority: int
    valid_until: Optional[datetime] = None
    label: str


class DealProduct(BaseModel):
    product_id: str
    category_id: Optional[str] = None
    base_price: float
    deal_price: float
    compare_at_price: float
    deal: DealSummary


# ─────────────── Rule CRUD: shared validation ───────────────

def _check_window(valid_from, valid_until):
    if valid_from is not None and valid_until is not None and valid_from >= valid_until:
        raise ValueError("valid_until must be after valid_from")


class _RuleFields(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    kind: DiscountKind
    value: float

    @field_validator("value")
    @classmethod
    def value_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v


class _ScopedFields(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    min_order_amount: float = 0.0
    max_discount_amount: Optional[float] = None
    scope: ScopeKind = ScopeKind.all
    category_ids: List[str] = []
    product_ids: List[str] = []

    @field_validator("category_ids", "product_ids", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _stringify_ids(v)

    @field_validator("min_order_amount", "max_discount_amount")
    @classmethod
    def amount_non_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("Amount cannot be negative")
        return v


def _check_priority(v):
    if v is not None and not -PRIORITY_BOUND <= v <= PRIORITY_BOUND:
        raise ValueError(f"Priority must be between -{PRIORITY_BOUND} and {PRIORITY_BOUND}")
    return v


# ─────────────── Deals ───────────────

class DealCreate(_RuleFields):
    name: str = Field(min_length=1, max_length=120)
    priority: int = 0
    valid_from: UTCDateTime
    valid_until: UTCDateTime
    product_ids: List[str] = []
    is_active: bool = True

    @field_validator("product_ids", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _stringify_ids(v)

    @field_validator("priority")
    @classmethod
    def priority_bounded(cls, v: int) -> int:
        return _check_priority(v)

    @model_validator(mode="after")
    def window_ordered(self) -> "DealCreate":
        _check_window(self.valid_from, self.valid_until)
        return self


class DealUpdate(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    kind: Optional[DiscountKind] = None
    value: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = None
    valid_from: Optional[UTCDateTime] = None
    valid_until: Optional[UTCDateTime] = None
    product_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("product_ids", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return None if v is None else _stringify_ids(v)

    @field_validator("priority")
    @classmethod
    def priority_bounded(cls, v):
        return _check_priority(v)


class DealResponse(BaseModel):
    id: int
    name: str
    kind: DiscountKind
    value: float
    priority: int
    valid_from: datetime
    valid_until: datetime
    product_ids: List[str]
    is_active: bool
    is_started: bool = False
    is_expired: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Promotions ───────────────

class PromotionCreate(_RuleFields, _ScopedFields):
    name: str = Field(min_length=1, max_length=120)
    priority: int = 0
    valid_from: UTCDateTime
    valid_until: UTCDateTime
    is_active: bool = True

    @field_validator("priority")
    @classmethod
    def priority_bounded(cls, v: int) -> int:
        return _check_priority(v)

    @model_validator(mode="after")
    def window_ordered(self) -> "PromotionCreate":
        _check_window(self.valid_from, self.valid_until)
        return self


class PromotionUpdate(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    kind: Optional[DiscountKind] = None
    value: Optional[float] = Field(default=None, ge=0)
    min_order_amount: Optional[float] = Field(default=None, ge=0)
    max_discount_amount: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = None
    valid_from: Optional[UTCDateTime] = None
    valid_until: Optional[UTCDateTime] = None
    scope: Optional[ScopeKind] = None
    category_ids: Optional[List[str]] = None
    product_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("category_ids", "product_ids", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return None if v is None else _stringify_ids(v)

    @field_validator("priority")
    @classmethod
    def priority_bounded(cls, v):
        return _check_priority(v)


class PromotionResponse(BaseModel):
    id: int
    name: str
    kind: DiscountKind
    value: float
    min_order_amount: float
    max_discount_amount: Optional[float] = None
    priority: int
    valid_from: datetime
    valid_until: datetime
    scope: ScopeKind
    category_ids: List[str]
    product_ids: List[str]
    is_active: bool
    is_started: bool = False
    is_expired: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Coupons ───────────────

class CouponCreate(_RuleFields, _ScopedFields):
    code: str = Field(min_length=2, max_length=40)
    name: Optional[str] = Field(default=None, max_length=120)
    valid_from: Optional[UTCDateTime] = None
    valid_until: Optional[UTCDateTime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)
    usage_limit_per_customer: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) < 2:
            raise ValueError("Code must be at least 2 characters")
        return v

    @model_validator(mode="after")
    def window_ordered(self) -> "CouponCreate":
        _check_window(self.valid_from, self.valid_until)
        return self


class CouponUpdate(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    code: Optional[str] = Field(default=None, min_length=2, max_length=40)
    name: Optional[str] = Field(default=None, max_length=120)
    kind: Optional[DiscountKind] = None
    value: Optional[float] = Field(default=None, ge=0)
    min_order_amount: Optional[float] = Field(default=None, ge=0)
    max_discount_amount: Optional[float] = Field(default=None, ge=0)
    valid_from: Optional[UTCDateTime] = None
    valid_until: Optional[UTCDateTime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)
    usage_limit_per_customer: Optional[int] = Field(default=None, ge=1)
    scope: Optional[ScopeKind] = None
    category_ids: Optional[List[str]] = None
    product_ids: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v):
        if v is None:
            return None
        v = v.strip().upper()
        if len(v) < 2:
            raise ValueError("Code must be at least 2 characters")
        return v

    @field_validator("category_ids", "product_ids", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return None if v is None else _stringify_ids(v)


class CouponResponse(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    kind: DiscountKind
    value: float
    min_order_amount: float
    max_discount_amount: Optional[float] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_limit_per_customer: Optional[int] = None
    used_count: int
    scope: ScopeKind
    category_ids: List[str]
    product_ids: List[str]
    is_active: bool
    is_started: bool = True
    is_expired: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Listing ───────────────

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DealList(BaseModel):
    items: List[DealResponse]
    pagination: Pagination


class PromotionList(BaseModel):
    items: List[PromotionResponse]
    pagination: Pagination


class CouponList(BaseModel):
    items: List[CouponResponse]
    pagination: Pagination


# ─────────────── Storefront / checkout requests ───────────────

class DealLookupRequest(BaseModel):
    product: Product
    now: Optional[UTCDateTime] = None


class DealLookupResponse(BaseModel):
    product_id: str
    base_price: float
    price: float
    deal: Optional[DealSummary] = None


class SuperDealsRequest(BaseModel):
    products: List[Product]
    limit: int = Field(default=12, ge=1, le=24)
    category_id: Optional[str] = None
    now: Optional[UTCDateTime] = None


class SuperDealsResponse(BaseModel):
    items: List[DealProduct]


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    cart: Cart
    now: Optional[UTCDateTime] = None


class CouponOutcome(BaseModel):
    code: str
    ok: bool
    error: Optional[CouponError] = None
    message: Optional[str] = None


class CouponValidateResponse(BaseModel):
    code: str
    coupon_id: int
    discount: float


class QuoteRequest(BaseModel):
    cart: Cart
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    now: Optional[UTCDateTime] = None


class AppliedPromotion(BaseModel):
    id: int
    name: str


class QuoteResponse(BaseModel):
    lines: List[PricedLine]
    totals: OrderTotals
    promotion: Optional[AppliedPromotion] = None
    coupon: Optional[CouponOutcome] = None


class ConfirmRequest(QuoteRequest):
    order_ref: Optional[str] = Field(default=None, max_length=120)


class ConfirmResponse(QuoteResponse):
    order_ref: Optional[str] = None
    coupon_used_count: Optional[int] = None
