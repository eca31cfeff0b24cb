"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /deals                  - Create a deal
  GET    /deals                  - List deals (status / q / sort / pagination)
  GET    /deals/{id}             - Get deal by ID
  PUT    /deals/{id}             - Update deal
  DELETE /deals/{id}             - Delete deal
  POST   /deals/resolve          - Best deal and deal price for one product
  POST   /deals/super            - Storefront listing of products on deal

  POST   /promotions ...         - Same CRUD set for promotions
  POST   /coupons ...            - Same CRUD set for coupons
  POST   /coupons/validate       - Validate a coupon code against a cart

  POST   /checkout/quote         - Price a cart: deals, promotion, coupon, totals
  POST   /checkout/confirm       - Quote again and consume the coupon's budget

Every evaluation endpoint accepts an optional ``now``; the server clock is
used when it is omitted.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query, status
from sqlalchemy.orm import Session

import models
import schemas
import store
import coupon_engine
import discount_engine
from config import Settings, setup_logging
from database import engine, get_db
from redemption import CouponNotFound, UsageLimitExceeded, commit_redemption, count_customer_redemptions
from pricing import apply_discount, round_money
from rules import as_utc, has_expired, has_started

setup_logging()
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Discount Resolution API",
    description="Deals, automatic promotions and coupon codes combined into one deterministic order total.",
    version="1.0.0",
)


def _now(value: Optional[datetime] = None) -> datetime:
    return value if value is not None else datetime.now(timezone.utc)


def _get_or_404(db: Session, model, rule_id: int, label: str):
    row = db.get(model, rule_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"{label} with id={rule_id} not found")
    return row


def _present(schema_cls, row, now: datetime):
    return schema_cls.model_validate(row).model_copy(update={
        "is_started": has_started(row, now),
        "is_expired": has_expired(row, now),
    })


def _apply_update(row, update_data, nullable=()):
    """Copy provided fields onto ``row``; None only clears nullable columns."""
    for field, value in update_data.model_dump(exclude_unset=True).items():
        if value is None and field not in nullable:
            continue
        setattr(row, field, value)

    if row.valid_from is not None and row.valid_until is not None:
        if as_utc(row.valid_from) >= as_utc(row.valid_until):
            raise HTTPException(status_code=422, detail="valid_until must be after valid_from")


def _page_params(
    status_filter: schemas.RuleStatus = Query(schemas.RuleStatus.all, alias="status"),
    q: Optional[str] = Query(None, max_length=80),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
):
    return {"status": status_filter, "q": q, "page": page, "limit": limit}


# ═══════════════════════════════════════════════════
#  DEALS
# ═══════════════════════════════════════════════════

@app.post(
    "/deals",
    response_model=schemas.DealResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Deals"],
    summary="Create a new deal",
)
def create_deal(deal: schemas.DealCreate, db: Session = Depends(get_db)):
    """
    Create a merchandising deal claiming a list of products.
    Both **valid_from** and **valid_until** are required.
    """
    db_deal = models.Deal(**deal.model_dump())
    db.add(db_deal)
    db.commit()
    db.refresh(db_deal)
    return _present(schemas.DealResponse, db_deal, _now())


@app.get(
    "/deals",
    response_model=schemas.DealList,
    tags=["Deals"],
    summary="List deals",
)
def list_deals(
    sort: schemas.RuleSort = Query(schemas.RuleSort.priority),
    params: dict = Depends(_page_params),
    db: Session = Depends(get_db),
):
    now = _now()
    rows, pagination = store.list_rules(db, models.Deal, now, sort=sort, **params)
    return {"items": [_present(schemas.DealResponse, r, now) for r in rows], "pagination": pagination}


@app.get("/deals/{deal_id}", response_model=schemas.DealResponse, tags=["Deals"], summary="Get a deal by ID")
def get_deal(deal_id: int, db: Session = Depends(get_db)):
    return _present(schemas.DealResponse, _get_or_404(db, models.Deal, deal_id, "Deal"), _now())


@app.put("/deals/{deal_id}", response_model=schemas.DealResponse, tags=["Deals"], summary="Update a deal")
def update_deal(deal_id: int, update_data: schemas.DealUpdate, db: Session = Depends(get_db)):
    """Only provided fields are updated."""
    deal = _get_or_404(db, models.Deal, deal_id, "Deal")
    _apply_update(deal, update_data)
    db.commit()
    db.refresh(deal)
    return _present(schemas.DealResponse, deal, _now())


@app.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Deals"], summary="Delete a deal")
def delete_deal(deal_id: int, db: Session = Depends(get_db)):
    deal = _get_or_404(db, models.Deal, deal_id, "Deal")
    db.delete(deal)
    db.commit()
    return None


@app.post(
    "/deals/resolve",
    response_model=schemas.DealLookupResponse,
    tags=["Storefront"],
    summary="Resolve the best deal for a product",
)
def resolve_deal(request: schemas.DealLookupRequest, db: Session = Depends(get_db)):
    now = _now(request.now)
    product = request.product
    deal = discount_engine.resolve_best_deal_for_product(product, store.load_deals(db, now), now)

    base_price = round_money(product.base_price)
    if deal is None:
        return schemas.DealLookupResponse(product_id=product.id, base_price=base_price, price=base_price)

    return schemas.DealLookupResponse(
        product_id=product.id,
        base_price=base_price,
        price=apply_discount(product.base_price, deal.kind, deal.value),
        deal=discount_engine.summarize_deal(deal, Settings.CURRENCY_CODE),
    )


@app.post(
    "/deals/super",
    response_model=schemas.SuperDealsResponse,
    tags=["Storefront"],
    summary="Products currently on deal",
)
def super_deals(request: schemas.SuperDealsRequest, db: Session = Depends(get_db)):
    now = _now(request.now)
    items = discount_engine.list_deal_products(
        request.products,
        store.load_deals(db, now),
        now,
        limit=request.limit,
        category_id=request.category_id,
        currency=Settings.CURRENCY_CODE,
    )
    return schemas.SuperDealsResponse(items=items)


# ═══════════════════════════════════════════════════
#  PROMOTIONS
# ═══════════════════════════════════════════════════

@app.post(
    "/promotions",
    response_model=schemas.PromotionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Promotions"],
    summary="Create a new promotion",
)
def create_promotion(promotion: schemas.PromotionCreate, db: Session = Depends(get_db)):
    """
    Create an automatic promotion. Scope is one of:
    - **all**: every cart qualifies.
    - **categories**: at least one line in `category_ids`.
    - **products**: at least one line in `product_ids`.
    """
    db_promotion = models.Promotion(**promotion.model_dump())
    db.add(db_promotion)
    db.commit()
    db.refresh(db_promotion)
    return _present(schemas.PromotionResponse, db_promotion, _now())


@app.get("/promotions", response_model=schemas.PromotionList, tags=["Promotions"], summary="List promotions")
def list_promotions(
    sort: schemas.RuleSort = Query(schemas.RuleSort.priority),
    params: dict = Depends(_page_params),
    db: Session = Depends(get_db),
):
    now = _now()
    rows, pagination = store.list_rules(db, models.Promotion, now, sort=sort, **params)
    return {"items": [_present(schemas.PromotionResponse, r, now) for r in rows], "pagination": pagination}


@app.get(
    "/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Get a promotion by ID",
)
def get_promotion(promotion_id: int, db: Session = Depends(get_db)):
    row = _get_or_404(db, models.Promotion, promotion_id, "Promotion")
    return _present(schemas.PromotionResponse, row, _now())


@app.put(
    "/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Update a promotion",
)
def update_promotion(promotion_id: int, update_data: schemas.PromotionUpdate, db: Session = Depends(get_db)):
    promotion = _get_or_404(db, models.Promotion, promotion_id, "Promotion")
    _apply_update(promotion, update_data, nullable={"max_discount_amount"})
    db.commit()
    db.refresh(promotion)
    return _present(schemas.PromotionResponse, promotion, _now())


@app.delete(
    "/promotions/{promotion_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Promotions"],
    summary="Delete a promotion",
)
def delete_promotion(promotion_id: int, db: Session = Depends(get_db)):
    promotion = _get_or_404(db, models.Promotion, promotion_id, "Promotion")
    db.delete(promotion)
    db.commit()
    return None


# ═══════════════════════════════════════════════════
#  COUPONS
# ═══════════════════════════════════════════════════

_COUPON_NULLABLE = {"name", "max_discount_amount", "valid_from", "valid_until", "usage_limit", "usage_limit_per_customer"}


@app.post(
    "/coupons",
    response_model=schemas.CouponResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Coupons"],
    summary="Create a new coupon",
)
def create_coupon(coupon: schemas.CouponCreate, db: Session = Depends(get_db)):
    """
    Create a coupon code. The code is stored trimmed and upper-cased and must
    be unique. `usage_limit` and `usage_limit_per_customer` are optional.
    """
    if store.code_exists(db, coupon.code):
        raise HTTPException(status_code=409, detail="Code already exists")

    db_coupon = models.Coupon(**coupon.model_dump(), used_count=0)
    db.add(db_coupon)
    db.commit()
    db.refresh(db_coupon)
    return _present(schemas.CouponResponse, db_coupon, _now())


@app.get("/coupons", response_model=schemas.CouponList, tags=["Coupons"], summary="List coupons")
def list_coupons(
    sort: schemas.RuleSort = Query(schemas.RuleSort.newest),
    params: dict = Depends(_page_params),
    db: Session = Depends(get_db),
):
    now = _now()
    rows, pagination = store.list_rules(db, models.Coupon, now, sort=sort, **params)
    return {"items": [_present(schemas.CouponResponse, r, now) for r in rows], "pagination": pagination}


@app.post(
    "/coupons/validate",
    response_model=schemas.CouponValidateResponse,
    tags=["Checkout"],
    summary="Validate a coupon code against a cart",
    responses={400: {"description": "Coupon rejected; detail carries the reason"}},
)
def validate_coupon(request: schemas.CouponValidateRequest, db: Session = Depends(get_db)):
    """
    Runs the coupon checks in order and reports the first failure.
    Never consumes the coupon's budget.
    """
    now = _now(request.now)
    priced = discount_engine.price_cart(request.cart, store.load_deals(db, now), now, Settings.CURRENCY_CODE)
    result = _check_coupon(db, request.code, priced, now)

    if not result.ok:
        raise HTTPException(
            status_code=400,
            detail={"code": result.code, "error": result.error.value, "message": result.message},
        )

    return schemas.CouponValidateResponse(code=result.code, coupon_id=result.coupon.id, discount=result.discount)


@app.get("/coupons/{coupon_id}", response_model=schemas.CouponResponse, tags=["Coupons"], summary="Get a coupon by ID")
def get_coupon(coupon_id: int, db: Session = Depends(get_db)):
    return _present(schemas.CouponResponse, _get_or_404(db, models.Coupon, coupon_id, "Coupon"), _now())


@app.put("/coupons/{coupon_id}", response_model=schemas.CouponResponse, tags=["Coupons"], summary="Update a coupon")
def update_coupon(coupon_id: int, update_data: schemas.CouponUpdate, db: Session = Depends(get_db)):
    """
    Update a coupon. `used_count` is not editable; it only moves through
    order confirmation.
    """
    coupon = _get_or_404(db, models.Coupon, coupon_id, "Coupon")
    if update_data.code is not None and store.code_exists(db, update_data.code, exclude_id=coupon_id):
        raise HTTPException(status_code=409, detail="Code already exists")

    _apply_update(coupon, update_data, nullable=_COUPON_NULLABLE)
    if coupon.usage_limit is not None and coupon.usage_limit < coupon.used_count:
        raise HTTPException(status_code=422, detail="usage_limit cannot be below used_count")

    db.commit()
    db.refresh(coupon)
    return _present(schemas.CouponResponse, coupon, _now())


@app.delete("/coupons/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Coupons"], summary="Delete a coupon")
def delete_coupon(coupon_id: int, db: Session = Depends(get_db)):
    coupon = _get_or_404(db, models.Coupon, coupon_id, "Coupon")
    db.delete(coupon)
    db.commit()
    return None


# ═══════════════════════════════════════════════════
#  CHECKOUT
# ═══════════════════════════════════════════════════

def _check_coupon(db: Session, code: str, priced: schemas.PricedCart, now: datetime) -> schemas.CouponValidation:
    coupons = store.load_coupons_by_code(db, code)
    redemptions = 0
    if coupons and priced.customer_id:
        redemptions = count_customer_redemptions(db, coupons[0].id, priced.customer_id)
    return coupon_engine.validate_coupon(code, priced, priced.customer_id, coupons, now, redemptions)


def _quote(db: Session, request: schemas.QuoteRequest):
    now = _now(request.now)
    priced = discount_engine.price_cart(request.cart, store.load_deals(db, now), now, Settings.CURRENCY_CODE)

    promotion = discount_engine.resolve_promotion_for_cart(priced, store.load_promotions(db, now), now)
    promotion_amount = promotion.discount if promotion else 0.0

    coupon_result = None
    coupon_amount = 0.0
    if request.coupon_code and request.coupon_code.strip():
        coupon_result = _check_coupon(db, request.coupon_code, priced, now)
        if coupon_result.ok:
            coupon_amount = coupon_result.discount

    discount = min(priced.items_subtotal, promotion_amount + coupon_amount)
    shipping = discount_engine.compute_shipping(
        priced.items_subtotal, discount, Settings.SHIPPING_FLAT_AMOUNT, Settings.SHIPPING_FREE_ABOVE
    )
    tax = discount_engine.compute_tax(priced.items_subtotal, discount, Settings.TAX_RATE_PERCENT)
    totals = discount_engine.aggregate_order_totals(priced, promotion_amount, coupon_amount, shipping, tax)

    response = schemas.QuoteResponse(
        lines=priced.lines,
        totals=totals,
        promotion=(
            schemas.AppliedPromotion(id=promotion.promotion.id, name=promotion.promotion.name)
            if promotion else None
        ),
        coupon=(
            schemas.CouponOutcome(
                code=coupon_result.code,
                ok=coupon_result.ok,
                error=coupon_result.error,
                message=coupon_result.message,
            )
            if coupon_result else None
        ),
    )
    return response, coupon_result


@app.post("/checkout/quote", response_model=schemas.QuoteResponse, tags=["Checkout"], summary="Quote a cart")
def quote(request: schemas.QuoteRequest, db: Session = Depends(get_db)):
    """
    Returns per-line deal prices and the order breakdown. An invalid coupon
    does not fail the quote; its outcome is reported under `coupon`.
    """
    response, _ = _quote(db, request)
    return response


@app.post(
    "/checkout/confirm",
    response_model=schemas.ConfirmResponse,
    tags=["Checkout"],
    summary="Confirm an order and redeem its coupon",
    responses={409: {"description": "Coupon budget exhausted by a concurrent order"}},
)
def confirm(request: schemas.ConfirmRequest, db: Session = Depends(get_db)):
    """
    Re-quotes the cart and, when a coupon is present, consumes one unit of its
    budget. The coupon discount is only returned after a successful commit.
    """
    response, coupon_result = _quote(db, request)

    if coupon_result is not None and not coupon_result.ok:
        raise HTTPException(
            status_code=400,
            detail={"code": coupon_result.code, "error": coupon_result.error.value, "message": coupon_result.message},
        )

    used_count = None
    if coupon_result is not None:
        try:
            used_count = commit_redemption(
                db, coupon_result.coupon.id, request.cart.customer_id, request.order_ref
            )
        except (UsageLimitExceeded, CouponNotFound) as e:
            raise HTTPException(
                status_code=409,
                detail={
                    "code": coupon_result.code,
                    "error": schemas.CouponError.usage_limit_exceeded.value
                    if isinstance(e, UsageLimitExceeded) else schemas.CouponError.not_found.value,
                    "message": e.message,
                },
            )

    logger.info("Order %s confirmed: total=%.2f", request.order_ref, response.totals.total_amount)
    return schemas.ConfirmResponse(
        **response.model_dump(),
        order_ref=request.order_ref,
        coupon_used_count=used_count,
    )


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Discount Resolution API is running"}
