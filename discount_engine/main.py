import logging
import re
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException

from .config import config
from .coupons import coupon_stats, coupon_usage_details, record_coupon_usage, validate_coupon
from .errors import StorageError
from .models import (
    AutomaticDiscountPayload,
    AutomaticDiscountRule,
    AutomaticDiscountStats,
    Coupon,
    CouponStats,
    CouponUsageRecord,
    CouponValidationRequest,
    DiscountOutcome,
    EvaluationRequest,
    RejectionReason,
    ResolveRequest,
    UsageClaim,
    UsageRequest,
)
from .resolution import resolve_discount
from .rules import automatic_discount_stats, select_best_automatic
from .storage import STORE, DiscountStore, normalize_code

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")


def get_store() -> DiscountStore:
    return STORE


# ---------------------------
# FastAPI App & Routes
# ---------------------------

app = FastAPI(title="Discount & Coupon Evaluation Service")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/coupons", response_model=Coupon)
def create_coupon(coupon: Coupon, store: DiscountStore = Depends(get_store)):
    code_upper = normalize_code(coupon.code)
    if not COUPON_CODE_PATTERN.match(code_upper):
        raise HTTPException(status_code=422, detail="Coupon code must be 3-20 letters or digits")
    try:
        return store.add_coupon(coupon)
    except StorageError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/coupons", response_model=List[Coupon])
def list_coupons(storeId: Optional[str] = None, store: DiscountStore = Depends(get_store)):
    return store.list_coupons(storeId)


@app.post("/automatic-discounts", response_model=AutomaticDiscountRule)
def create_automatic_discount(payload: AutomaticDiscountPayload, store: DiscountStore = Depends(get_store)):
    rule_id = payload.rule.id
    if any(t.ruleId != rule_id for t in payload.tiers) or any(e.ruleId != rule_id for e in payload.entries):
        raise HTTPException(status_code=422, detail="Tiers and entries must reference the rule they belong to")
    try:
        return store.add_automatic_discount(payload.rule, payload.tiers, payload.entries)
    except StorageError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/automatic-discounts", response_model=List[AutomaticDiscountRule])
def list_automatic_discounts(storeId: Optional[str] = None, store: DiscountStore = Depends(get_store)):
    return store.list_automatic_discounts(storeId)


@app.post("/coupons/validate", response_model=DiscountOutcome)
def validate_coupon_code(payload: CouponValidationRequest, store: DiscountStore = Depends(get_store)):
    return validate_coupon(
        store,
        payload.couponCode,
        payload.storeId,
        payload.cart,
        payload.customer,
        payload.paymentMethod,
        currency_symbol=config.CURRENCY_SYMBOL,
    )


@app.post("/automatic-discounts/evaluate", response_model=DiscountOutcome)
def evaluate_automatic_discount(payload: EvaluationRequest, store: DiscountStore = Depends(get_store)):
    return select_best_automatic(store, payload.storeId, payload.cart, payload.customer, payload.paymentMethod)


@app.post("/discounts/resolve", response_model=DiscountOutcome)
def resolve(payload: ResolveRequest, store: DiscountStore = Depends(get_store)):
    return resolve_discount(
        store,
        payload.storeId,
        payload.cart,
        payload.customer,
        payload.paymentMethod,
        coupon_code=payload.couponCode,
        currency_symbol=config.CURRENCY_SYMBOL,
    )


@app.post("/coupons/usage", response_model=UsageClaim)
def record_usage(payload: UsageRequest, store: DiscountStore = Depends(get_store)):
    if not payload.orderId.strip():
        raise HTTPException(status_code=422, detail="orderId is required")

    claim = record_coupon_usage(store, payload.couponId, payload.orderId, payload.customer, payload.discountApplied)
    if claim.rejectionReason == RejectionReason.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Coupon not found")
    if not claim.recorded:
        raise HTTPException(status_code=409, detail=claim.rejectionReason.value)
    return claim


@app.get("/coupons/{coupon_id}/usage", response_model=List[CouponUsageRecord])
def list_coupon_usage(coupon_id: str, store: DiscountStore = Depends(get_store)):
    if store.get_coupon(coupon_id) is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon_usage_details(store, coupon_id)


@app.get("/stores/{store_id}/coupon-stats", response_model=CouponStats)
def get_coupon_stats(store_id: str, store: DiscountStore = Depends(get_store)):
    return coupon_stats(store, store_id)


@app.get("/stores/{store_id}/automatic-discount-stats", response_model=AutomaticDiscountStats)
def get_automatic_discount_stats(store_id: str, store: DiscountStore = Depends(get_store)):
    return automatic_discount_stats(store, store_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "discount_engine.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=False,
    )
