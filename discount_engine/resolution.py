import logging
from datetime import datetime
from typing import Optional

from .coupons import validate_coupon
from .models import CartSnapshot, CustomerIdentity, DiscountOutcome
from .rules import select_best_automatic

logger = logging.getLogger(__name__)


def resolve_discount(
    store,
    store_id: str,
    cart: CartSnapshot,
    identity: Optional[CustomerIdentity],
    payment_method: Optional[str],
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
    currency_symbol: str = "₹",
) -> DiscountOutcome:
    """
    Pick the single discount for an order.

    A valid coupon always wins and automatic rules are then not evaluated
    at all. Without a code, or when the code is rejected, the best
    automatic discount applies. A coupon and an automatic discount never
    stack.
    """
    rejected: Optional[DiscountOutcome] = None

    if coupon_code and coupon_code.strip():
        outcome = validate_coupon(
            store, coupon_code, store_id, cart, identity, payment_method,
            now=now, currency_symbol=currency_symbol,
        )
        if outcome.applicable:
            return outcome
        rejected = outcome

    outcome = select_best_automatic(store, store_id, cart, identity, payment_method, now=now)

    if rejected is not None:
        # the caller still needs to know why the code was not used
        outcome = outcome.model_copy(update={
            "rejectionReason": rejected.rejectionReason,
            "message": rejected.message,
        })
        logger.info(
            "coupon %s not applied (%s); falling back to %s",
            coupon_code, rejected.rejectionReason.value, outcome.source.value,
        )
    return outcome
