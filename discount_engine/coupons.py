import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from .logic import as_aware, calculate_discount, classify_customer, final_total, is_payment_compatible, utcnow
from .models import (
    CartSnapshot,
    Coupon,
    CouponStatus,
    CouponUsageRecord,
    CustomerIdentity,
    CustomerTarget,
    CustomerType,
    DiscountOutcome,
    DiscountSource,
    RejectionReason,
    UsageClaim,
)
from .storage import normalize_code, per_customer_usage

logger = logging.getLogger(__name__)


def _format_amount(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def rejection_message(reason: RejectionReason, coupon: Optional[Coupon] = None, currency_symbol: str = "₹") -> str:
    if reason == RejectionReason.BELOW_MINIMUM and coupon is not None and coupon.minOrderValue is not None:
        return f"Minimum order value of {currency_symbol}{_format_amount(coupon.minOrderValue)} required"
    if reason == RejectionReason.WRONG_CUSTOMER_TYPE and coupon is not None:
        if coupon.customerType == CustomerTarget.RETURNING:
            return "This coupon is for returning customers only"
        return "This coupon is for new customers only"
    return {
        RejectionReason.NOT_FOUND: "Coupon not found",
        RejectionReason.INACTIVE: "Coupon is not active",
        RejectionReason.EXPIRED: "Coupon has expired",
        RejectionReason.NOT_YET_ACTIVE: "Coupon is not yet active",
        RejectionReason.BELOW_MINIMUM: "Minimum order value not reached",
        RejectionReason.WRONG_CUSTOMER_TYPE: "This coupon is not available for this customer",
        RejectionReason.NOT_FIRST_ORDER: "This coupon is for first-time customers only",
        RejectionReason.LIMIT_EXCEEDED: "Coupon usage limit exceeded",
        RejectionReason.PER_CUSTOMER_LIMIT_EXCEEDED: "You have already used this coupon the maximum number of times",
        RejectionReason.WRONG_PAYMENT_METHOD: "This coupon is not valid for the selected payment method",
    }[reason]


def _reject(
    reason: RejectionReason,
    subtotal: float,
    coupon: Optional[Coupon] = None,
    currency_symbol: str = "₹",
) -> DiscountOutcome:
    logger.info("coupon %s rejected: %s", coupon.code if coupon else "<unknown>", reason.value)
    return DiscountOutcome(
        applicable=False,
        source=DiscountSource.NONE,
        ruleOrCouponId=coupon.id if coupon else None,
        label=coupon.code if coupon else None,
        discountAmount=0.0,
        finalTotal=subtotal,
        rejectionReason=reason,
        message=rejection_message(reason, coupon, currency_symbol),
    )


def _usage_count(coupon: Coupon, count, *args) -> Optional[int]:
    """
    Read a usage count, or None when it cannot be read.

    Callers treat None as an exhausted cap: a limit that cannot be checked
    is not honoured.
    """
    try:
        return count(*args)
    except Exception:
        logger.exception("usage count failed for coupon %s; treating its limit as reached", coupon.code)
        return None


def validate_coupon(
    store,
    code: Optional[str],
    store_id: str,
    cart: CartSnapshot,
    identity: Optional[CustomerIdentity],
    payment_method: Optional[str],
    now: Optional[datetime] = None,
    currency_symbol: str = "₹",
) -> DiscountOutcome:
    """
    Run a coupon code through the redemption gates in order.

    The first failing gate decides the rejection reason; gate failures are
    returned as outcomes, never raised. On success the outcome carries the
    amount the coupon is worth against the cart subtotal.
    """
    if now is None:
        now = utcnow()
    now = as_aware(now)
    identity = identity or CustomerIdentity()
    subtotal = cart.subtotal

    # 1. lookup
    normalized = normalize_code(code)
    coupon = None
    if normalized:
        try:
            coupon = store.find_coupon(store_id, normalized)
        except Exception:
            logger.exception("coupon lookup failed for store %s", store_id)
    if coupon is None:
        return _reject(RejectionReason.NOT_FOUND, subtotal, currency_symbol=currency_symbol)

    # 2. status
    if coupon.status != CouponStatus.ACTIVE:
        return _reject(RejectionReason.INACTIVE, subtotal, coupon, currency_symbol)

    # 3-4. window
    if now >= as_aware(coupon.expiryDate):
        return _reject(RejectionReason.EXPIRED, subtotal, coupon, currency_symbol)
    if now < as_aware(coupon.startDate):
        return _reject(RejectionReason.NOT_YET_ACTIVE, subtotal, coupon, currency_symbol)

    # 5. minimum order value
    if coupon.minOrderValue is not None and subtotal < coupon.minOrderValue:
        return _reject(RejectionReason.BELOW_MINIMUM, subtotal, coupon, currency_symbol)

    # 6-7. customer targeting, classified at most once
    customer_type: Optional[CustomerType] = None
    if coupon.customerType != CustomerTarget.ALL or coupon.isFirstOrderOnly:
        customer_type = classify_customer(store, identity, store_id)

    if coupon.customerType == CustomerTarget.NEW and customer_type != CustomerType.NEW:
        return _reject(RejectionReason.WRONG_CUSTOMER_TYPE, subtotal, coupon, currency_symbol)
    if coupon.customerType == CustomerTarget.RETURNING and customer_type != CustomerType.RETURNING:
        return _reject(RejectionReason.WRONG_CUSTOMER_TYPE, subtotal, coupon, currency_symbol)

    if coupon.isFirstOrderOnly and customer_type != CustomerType.NEW:
        return _reject(RejectionReason.NOT_FIRST_ORDER, subtotal, coupon, currency_symbol)

    # 8. global usage cap
    if coupon.usageLimitTotal is not None:
        used = _usage_count(coupon, store.count_coupon_usage, coupon.id)
        if used is None or used >= coupon.usageLimitTotal:
            return _reject(RejectionReason.LIMIT_EXCEEDED, subtotal, coupon, currency_symbol)

    # 9. per-customer usage cap
    if coupon.usageLimitPerCustomer is not None and identity.is_known:
        used = _usage_count(
            coupon, per_customer_usage, store, coupon.id, identity.normalized_phone, identity.normalized_email,
        )
        if used is None or used >= coupon.usageLimitPerCustomer:
            return _reject(RejectionReason.PER_CUSTOMER_LIMIT_EXCEEDED, subtotal, coupon, currency_symbol)

    # 10. payment method
    if not is_payment_compatible(coupon.orderTypeScope, payment_method):
        return _reject(RejectionReason.WRONG_PAYMENT_METHOD, subtotal, coupon, currency_symbol)

    amount = min(
        calculate_discount(subtotal, coupon.discountType, coupon.discountValue, coupon.maxDiscount),
        subtotal,
    )
    logger.info("coupon %s accepted for store %s: %.2f", coupon.code, store_id, amount)
    return DiscountOutcome(
        applicable=True,
        source=DiscountSource.COUPON,
        ruleOrCouponId=coupon.id,
        label=coupon.code,
        discountType=coupon.discountType,
        discountValue=coupon.discountValue,
        discountAmount=amount,
        finalTotal=final_total(subtotal, amount),
    )


def record_coupon_usage(
    store,
    coupon_id: str,
    order_id: str,
    identity: Optional[CustomerIdentity],
    discount_applied: float,
    now: Optional[datetime] = None,
) -> UsageClaim:
    """
    Record one redemption of a coupon against an order that already exists.

    The storage collaborator re-checks the coupon's caps and appends the
    record atomically, so a claim can still be refused if concurrent
    checkouts used up the last slot after validation.
    """
    if not (order_id or "").strip():
        raise ValueError("order_id is required to record coupon usage")

    coupon = store.get_coupon(coupon_id)
    if coupon is None:
        return UsageClaim(recorded=False, rejectionReason=RejectionReason.NOT_FOUND)

    identity = identity or CustomerIdentity()
    record = CouponUsageRecord(
        id=str(uuid.uuid4()),
        couponId=coupon.id,
        orderId=order_id,
        customerPhone=identity.normalized_phone,
        customerEmail=identity.normalized_email,
        discountApplied=max(0.0, discount_applied),
        usedAt=as_aware(now) if now is not None else utcnow(),
    )
    claim = store.claim_coupon_usage(coupon, record)
    if claim.recorded:
        logger.info("recorded usage of coupon %s on order %s", coupon.code, order_id)
    else:
        logger.warning(
            "usage of coupon %s on order %s refused: %s",
            coupon.code, order_id, claim.rejectionReason.value,
        )
    return claim


def coupon_usage_details(store, coupon_id: str) -> List[CouponUsageRecord]:
    return sorted(store.list_coupon_usage(coupon_id), key=lambda r: as_aware(r.usedAt), reverse=True)


def coupon_stats(store, store_id: str) -> Dict[str, float]:
    coupons = store.list_coupons(store_id)
    usage: List[CouponUsageRecord] = []
    for coupon in coupons:
        usage.extend(store.list_coupon_usage(coupon.id))
    return {
        "totalCoupons": len(coupons),
        "activeCoupons": sum(1 for c in coupons if c.status == CouponStatus.ACTIVE),
        "totalUsage": len(usage),
        "totalDiscountGiven": sum(r.discountApplied for r in usage),
    }
