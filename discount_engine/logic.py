import logging
from datetime import datetime, timezone
from typing import Optional

from .models import CustomerIdentity, CustomerType, DiscountType, OrderTypeScope

logger = logging.getLogger(__name__)

COD = "cod"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(moment: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def calculate_discount(
    base_amount: float,
    discount_type: DiscountType,
    discount_value: float,
    max_discount: Optional[float] = None,
) -> float:
    if base_amount <= 0:
        return 0.0

    dtype = DiscountType(discount_type)
    if dtype == DiscountType.PERCENTAGE:
        discount = base_amount * discount_value / 100.0
    else:
        discount = min(discount_value, base_amount)

    if max_discount is not None:
        discount = min(discount, max_discount)

    # discount cannot exceed base amount and cannot be negative
    return max(0.0, min(discount, base_amount))


def is_within_window(start_date: datetime, expiry_date: datetime, now: Optional[datetime] = None) -> bool:
    if now is None:
        now = utcnow()
    now = as_aware(now)
    return as_aware(start_date) <= now < as_aware(expiry_date)


def is_payment_compatible(scope: OrderTypeScope, payment_method: Optional[str]) -> bool:
    method = (payment_method or "").strip().lower()
    scope = OrderTypeScope(scope)
    if scope == OrderTypeScope.ALL:
        return True
    if scope == OrderTypeScope.ONLINE:
        return method != COD
    return method == COD


def classify_customer(store, identity: Optional[CustomerIdentity], store_id: str) -> CustomerType:
    """
    Classify a customer as new or returning from the store's order history.

    Phone and email are matched with OR semantics. A customer with no
    identifying field, or whose history cannot be read, is classified as
    new: the more permissive classification is the intended default.
    """
    if identity is None or not identity.is_known:
        return CustomerType.NEW

    try:
        prior = store.count_prior_orders(store_id, identity.normalized_phone, identity.normalized_email)
    except Exception:
        logger.warning("order history lookup failed for store %s; treating customer as new", store_id, exc_info=True)
        return CustomerType.NEW

    return CustomerType.RETURNING if prior > 0 else CustomerType.NEW


def final_total(subtotal: float, discount_amount: float) -> float:
    return max(0.0, subtotal - discount_amount)
