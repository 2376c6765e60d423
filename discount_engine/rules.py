import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from .errors import RuleConfigurationError
from .logic import as_aware, calculate_discount, classify_customer, final_total, is_payment_compatible, is_within_window, utcnow
from .models import (
    AutomaticDiscountRule,
    CartSnapshot,
    CustomerIdentity,
    CustomerType,
    DiscountOutcome,
    DiscountSource,
    DiscountType,
    EvaluableRule,
    NonTieredVariant,
    RuleStatus,
    RuleType,
    TieredVariant,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class RuleMatch:
    rule: AutomaticDiscountRule
    amount: float
    discountType: DiscountType
    discountValue: float
    entryId: str


class LazyCustomerType:
    """Classifies the customer on first use only, then remembers the answer."""

    def __init__(self, store, identity: Optional[CustomerIdentity], store_id: str):
        self._store = store
        self._identity = identity
        self._store_id = store_id
        self._value: Optional[CustomerType] = None

    @classmethod
    def known(cls, value: CustomerType) -> "LazyCustomerType":
        resolved = cls(None, None, "")
        resolved._value = CustomerType(value)
        return resolved

    def get(self) -> CustomerType:
        if self._value is None:
            self._value = classify_customer(self._store, self._identity, self._store_id)
        return self._value


def _tiers(rule: EvaluableRule) -> TieredVariant:
    if not isinstance(rule.variant, TieredVariant):
        raise RuleConfigurationError(rule.rule.id, "tiered rule without a tier set")
    if not rule.variant.tiers:
        raise RuleConfigurationError(rule.rule.id, "tiered rule has no tiers")
    return rule.variant


def _entries(rule: EvaluableRule) -> NonTieredVariant:
    if not isinstance(rule.variant, NonTieredVariant):
        raise RuleConfigurationError(rule.rule.id, f"{rule.rule.ruleType.value} rule without rule entries")
    if not rule.variant.entries:
        raise RuleConfigurationError(rule.rule.id, f"{rule.rule.ruleType.value} rule has no entries")
    return rule.variant


def _match(rule: EvaluableRule, base: float, entry) -> Optional[RuleMatch]:
    amount = calculate_discount(base, entry.discountType, entry.discountValue)
    if amount <= 0:
        return None
    return RuleMatch(
        rule=rule.rule,
        amount=amount,
        discountType=entry.discountType,
        discountValue=entry.discountValue,
        entryId=entry.id,
    )


def evaluate_tiered(rule: EvaluableRule, cart: CartSnapshot, customer: LazyCustomerType) -> Optional[RuleMatch]:
    subtotal = cart.subtotal
    qualifying = [
        tier for tier in _tiers(rule).tiers
        if tier.minOrderValue is not None and tier.minOrderValue <= subtotal
    ]
    if not qualifying:
        return None
    # highest qualifying tier, not the first match
    tier = max(qualifying, key=lambda t: t.order)
    return _match(rule, subtotal, tier)


def evaluate_new_customer(rule: EvaluableRule, cart: CartSnapshot, customer: LazyCustomerType) -> Optional[RuleMatch]:
    entry = _entries(rule).entries[0]
    if customer.get() != CustomerType.NEW:
        return None
    return _match(rule, cart.subtotal, entry)


def evaluate_returning_customer(rule: EvaluableRule, cart: CartSnapshot, customer: LazyCustomerType) -> Optional[RuleMatch]:
    entry = _entries(rule).entries[0]
    if customer.get() != CustomerType.RETURNING:
        return None
    return _match(rule, cart.subtotal, entry)


def evaluate_category(rule: EvaluableRule, cart: CartSnapshot, customer: LazyCustomerType) -> Optional[RuleMatch]:
    present = cart.categoriesPresent
    for entry in _entries(rule).entries:
        if entry.ruleValue in present:
            # only the matching category's lines are discounted
            return _match(rule, cart.subtotal_for_category(entry.ruleValue), entry)
    return None


def evaluate_quantity(rule: EvaluableRule, cart: CartSnapshot, customer: LazyCustomerType) -> Optional[RuleMatch]:
    entry = _entries(rule).entries[0]
    try:
        parsed = float(entry.ruleValue.strip())
    except ValueError:
        parsed = math.nan
    if not math.isfinite(parsed):
        raise RuleConfigurationError(rule.rule.id, f"quantity threshold {entry.ruleValue!r} is not a number")
    # "5.0" and "5.7" both mean at least 5 items
    threshold = int(parsed)
    if cart.itemCount < threshold:
        return None
    return _match(rule, cart.subtotal, entry)


EVALUATORS: Dict[RuleType, Callable[[EvaluableRule, CartSnapshot, LazyCustomerType], Optional[RuleMatch]]] = {
    RuleType.TIERED_VALUE: evaluate_tiered,
    RuleType.NEW_CUSTOMER: evaluate_new_customer,
    RuleType.RETURNING_CUSTOMER: evaluate_returning_customer,
    RuleType.CATEGORY: evaluate_category,
    RuleType.QUANTITY: evaluate_quantity,
}


def evaluate_rule(
    rule: EvaluableRule,
    cart: CartSnapshot,
    customer_type: Union[CustomerType, LazyCustomerType],
) -> Optional[RuleMatch]:
    """
    Decide whether one automatic rule fires for the cart.

    customer_type is either an already known CustomerType or a
    LazyCustomerType that classifies only if a customer-typed rule needs it.
    Returns the match with its amount, or None when the rule does not
    apply. Raises RuleConfigurationError when the rule cannot be evaluated.
    """
    evaluator = EVALUATORS.get(rule.rule.ruleType)
    if evaluator is None:
        raise RuleConfigurationError(rule.rule.id, f"unknown rule type {rule.rule.ruleType}")
    if not isinstance(customer_type, LazyCustomerType):
        customer_type = LazyCustomerType.known(customer_type)
    return evaluator(rule, cart, customer_type)


def load_rule(store, rule: AutomaticDiscountRule) -> EvaluableRule:
    if rule.ruleType == RuleType.TIERED_VALUE:
        return EvaluableRule(rule=rule, variant=TieredVariant(tiers=store.get_tiers(rule.id)))
    return EvaluableRule(rule=rule, variant=NonTieredVariant(entries=store.get_rule_entries(rule.id)))


def rule_sort_key(rule: AutomaticDiscountRule):
    """
    Order in which rules are evaluated:
     1. Highest priority
     2. If tie, earliest createdAt
     3. If still tie, lexicographically smaller id
    """
    created = as_aware(rule.createdAt) if rule.createdAt is not None else _EPOCH
    return (-rule.priority, created, rule.id)


def no_discount(subtotal: float = 0.0) -> DiscountOutcome:
    return DiscountOutcome(applicable=False, source=DiscountSource.NONE, discountAmount=0.0, finalTotal=subtotal)


def select_best_automatic(
    store,
    store_id: str,
    cart: CartSnapshot,
    identity: Optional[CustomerIdentity],
    payment_method: Optional[str],
    now: Optional[datetime] = None,
) -> DiscountOutcome:
    if now is None:
        now = utcnow()
    subtotal = cart.subtotal

    if cart.is_empty:
        return no_discount(subtotal)

    try:
        rules = store.list_active_automatic_discounts(store_id)
    except Exception:
        logger.exception("could not list automatic discounts for store %s", store_id)
        return no_discount(subtotal)

    candidates: List[AutomaticDiscountRule] = [
        rule for rule in rules
        if is_within_window(rule.startDate, rule.expiryDate, now)
        and is_payment_compatible(rule.orderTypeScope, payment_method)
    ]
    candidates.sort(key=rule_sort_key)

    customer = LazyCustomerType(store, identity, store_id)
    best: Optional[RuleMatch] = None

    for rule in candidates:
        try:
            match = evaluate_rule(load_rule(store, rule), cart, customer)
        except RuleConfigurationError as exc:
            logger.warning("skipping misconfigured automatic discount: %s", exc)
            continue
        except Exception:
            logger.exception("failed to evaluate automatic discount %s", rule.id)
            continue

        if match is not None and (best is None or match.amount > best.amount):
            best = match

    if best is None:
        return no_discount(subtotal)

    logger.info("automatic discount %s selected for store %s: %.2f", best.rule.id, store_id, best.amount)
    return DiscountOutcome(
        applicable=True,
        source=DiscountSource.AUTOMATIC,
        ruleOrCouponId=best.rule.id,
        label=best.rule.name,
        discountType=best.discountType,
        discountValue=best.discountValue,
        discountAmount=best.amount,
        finalTotal=final_total(subtotal, best.amount),
    )


def automatic_discount_stats(store, store_id: str) -> Dict[str, int]:
    rules = store.list_automatic_discounts(store_id)
    return {
        "totalRules": len(rules),
        "activeRules": sum(1 for r in rules if r.status == RuleStatus.ACTIVE),
    }
