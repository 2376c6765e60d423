from datetime import timedelta

import pytest

from discount_engine.errors import RuleConfigurationError
from discount_engine.models import (
    CustomerIdentity,
    CustomerType,
    DiscountSource,
    EvaluableRule,
    NonTieredVariant,
    RuleStatus,
    TieredVariant,
)
from discount_engine.rules import LazyCustomerType, automatic_discount_stats, evaluate_rule, select_best_automatic

from conftest import NOW, STORE_ID, make_cart, make_entry, make_rule, make_tier


def _ladder(rule_id="ladder"):
    return [
        make_tier(rule_id, 1, 500, value=5),
        make_tier(rule_id, 2, 1000, value=10),
        make_tier(rule_id, 3, 2500, value=15),
    ]


def _best(store, cart, identity=None, payment="online"):
    return select_best_automatic(store, STORE_ID, cart, identity or CustomerIdentity(), payment, now=NOW)


def test_tiered_picks_highest_qualifying_tier(store):
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=_ladder())
    outcome = _best(store, make_cart((3000, 1)))

    assert outcome.applicable
    assert outcome.source == DiscountSource.AUTOMATIC
    assert outcome.ruleOrCouponId == "ladder"
    assert outcome.discountValue == 15
    assert outcome.discountAmount == 450
    assert outcome.finalTotal == 2550


def test_tiered_below_lowest_tier(store):
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=_ladder())
    outcome = _best(store, make_cart((499, 1)))
    assert not outcome.applicable
    assert outcome.source == DiscountSource.NONE
    assert outcome.discountAmount == 0


def test_tiered_selection_is_monotonic(store):
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=_ladder())
    previous = 0.0
    for subtotal in range(0, 5001, 250):
        amount = _best(store, make_cart((subtotal, 1))).discountAmount
        assert amount >= previous
        previous = amount


def test_tier_without_minimum_never_matches(store):
    tiers = [make_tier("ladder", 1, None, value=50), make_tier("ladder", 2, 1000, value=10)]
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=tiers)

    assert not _best(store, make_cart((800, 1))).applicable
    assert _best(store, make_cart((1200, 1))).discountAmount == 120


def test_tiers_out_of_order_still_choose_by_order(store):
    tiers = [make_tier("ladder", 2, 1000, value=10), make_tier("ladder", 1, 500, value=5)]
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=tiers)
    assert _best(store, make_cart((1500, 1))).discountAmount == 150


def test_category_discount_only_on_matching_lines(store):
    rule = make_rule("electronics-sale", "category")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, "electronics", value=25)])

    cart = make_cart((2000, 1, "electronics"), (500, 2, "apparel"))
    outcome = _best(store, cart)

    assert outcome.discountAmount == 500
    assert outcome.finalTotal == 2500


def test_category_rule_without_matching_lines(store):
    rule = make_rule("electronics-sale", "category")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, "electronics", value=25)])
    assert not _best(store, make_cart((500, 2, "apparel"))).applicable


def test_quantity_threshold(store):
    rule = make_rule("bulk", "quantity")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, "3", discount_type="flat", value=100)])

    assert not _best(store, make_cart((200, 2))).applicable
    assert _best(store, make_cart((200, 2), (50, 1))).discountAmount == 100


def test_quantity_rule_with_non_numeric_threshold_is_skipped(store, caplog):
    rule = make_rule("bulk", "quantity")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, "three", value=10)])

    with caplog.at_level("WARNING", logger="discount_engine.rules"):
        outcome = _best(store, make_cart((200, 5)))

    assert not outcome.applicable
    assert "not a number" in caplog.text


def test_tiered_rule_without_tiers_is_skipped(store, caplog):
    store.add_automatic_discount(make_rule("empty-ladder", "tiered_value"))
    rule = make_rule("bulk", "quantity")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, "1", discount_type="flat", value=30)])

    with caplog.at_level("WARNING", logger="discount_engine.rules"):
        outcome = _best(store, make_cart((200, 1)))

    assert outcome.ruleOrCouponId == "bulk"
    assert "empty-ladder" in caplog.text


def test_new_customer_rule(store, customer):
    rule = make_rule("welcome", "new_customer")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, value=20)])

    assert _best(store, make_cart((1000, 1)), customer).discountAmount == 200

    store.record_order(STORE_ID, "o-1", phone=customer.phone)
    assert not _best(store, make_cart((1000, 1)), customer).applicable


def test_returning_customer_rule(store, customer):
    rule = make_rule("loyalty", "returning_customer")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, discount_type="flat", value=150)])

    assert not _best(store, make_cart((1000, 1)), customer).applicable

    store.record_order(STORE_ID, "o-1", email=customer.email)
    assert _best(store, make_cart((1000, 1)), customer).discountAmount == 150


def test_anonymous_customer_counts_as_new(store):
    rule = make_rule("welcome", "new_customer")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, value=10)])
    assert _best(store, make_cart((1000, 1))).discountAmount == 100


def test_highest_amount_wins(store):
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=_ladder())
    bulk = make_rule("bulk", "quantity")
    store.add_automatic_discount(bulk, entries=[make_entry(bulk.id, "2", value=20)])

    outcome = _best(store, make_cart((1000, 2)))
    assert outcome.ruleOrCouponId == "bulk"
    assert outcome.discountAmount == 400


def test_ties_go_to_priority_then_creation_order(store):
    early = make_rule("early", "quantity", createdAt=NOW - timedelta(days=10))
    late = make_rule("late", "quantity", createdAt=NOW - timedelta(days=1))
    store.add_automatic_discount(late, entries=[make_entry(late.id, "1", discount_type="flat", value=100)])
    store.add_automatic_discount(early, entries=[make_entry(early.id, "1", discount_type="flat", value=100)])

    assert _best(store, make_cart((1000, 1))).ruleOrCouponId == "early"

    boosted = make_rule("boosted", "quantity", priority=5, createdAt=NOW)
    store.add_automatic_discount(boosted, entries=[make_entry(boosted.id, "1", discount_type="flat", value=100)])
    assert _best(store, make_cart((1000, 1))).ruleOrCouponId == "boosted"


def test_inactive_expired_and_future_rules_are_ignored(store):
    def entries(rid):
        return [make_entry(rid, "1", discount_type="flat", value=100)]

    disabled = make_rule("disabled", "quantity", status=RuleStatus.DISABLED)
    expired = make_rule("expired", "quantity", expiryDate=NOW)
    future = make_rule("future", "quantity", startDate=NOW + timedelta(minutes=1))
    for rule in (disabled, expired, future):
        store.add_automatic_discount(rule, entries=entries(rule.id))

    assert not _best(store, make_cart((1000, 1))).applicable


def test_payment_scope_filters_rules(store):
    cod_only = make_rule("cod-only", "quantity", orderTypeScope="cod")
    store.add_automatic_discount(cod_only, entries=[make_entry(cod_only.id, "1", value=10)])

    assert not _best(store, make_cart((1000, 1)), payment="card").applicable
    assert _best(store, make_cart((1000, 1)), payment="cod").discountAmount == 100


def test_empty_cart_is_never_discounted(store):
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=[make_tier("ladder", 1, 0, "flat", 50)])
    assert not _best(store, make_cart()).applicable


def test_zero_amount_is_not_applicable(store):
    rule = make_rule("nothing", "quantity")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, "1", value=0)])
    assert not _best(store, make_cart((1000, 1))).applicable


def test_customer_lookup_happens_once_per_selection(store, customer):
    calls = []
    original = store.count_prior_orders

    def counting(*args, **kwargs):
        calls.append(args)
        return original(*args, **kwargs)

    store.count_prior_orders = counting
    for rid, rtype in (("welcome", "new_customer"), ("loyalty", "returning_customer")):
        rule = make_rule(rid, rtype)
        store.add_automatic_discount(rule, entries=[make_entry(rule.id, value=10)])

    _best(store, make_cart((1000, 1)), customer)
    assert len(calls) == 1


def test_rule_listing_failure_yields_no_discount(store, caplog):
    def broken(store_id):
        raise RuntimeError("database down")

    store.list_active_automatic_discounts = broken
    with caplog.at_level("ERROR", logger="discount_engine.rules"):
        outcome = _best(store, make_cart((1000, 1)))
    assert not outcome.applicable
    assert "could not list automatic discounts" in caplog.text


def test_evaluate_rule_rejects_mismatched_variant(store):
    rule = EvaluableRule(rule=make_rule("ladder", "tiered_value"), variant=NonTieredVariant(entries=[]))
    with pytest.raises(RuleConfigurationError):
        evaluate_rule(rule, make_cart((1000, 1)), LazyCustomerType(store, None, STORE_ID))


def test_evaluate_rule_returns_match_details(store):
    rule = EvaluableRule(rule=make_rule("ladder", "tiered_value"), variant=TieredVariant(tiers=_ladder()))
    match = evaluate_rule(rule, make_cart((1200, 1)), LazyCustomerType(store, None, STORE_ID))
    assert match.amount == 120
    assert match.entryId == "ladder-tier-2"


def test_automatic_discount_stats(store):
    store.add_automatic_discount(make_rule("ladder", "tiered_value"), tiers=_ladder())
    store.add_automatic_discount(make_rule("old", "quantity", status=RuleStatus.DISABLED))
    store.add_automatic_discount(make_rule("other-store", "quantity", storeId="store-2"))
    assert automatic_discount_stats(store, STORE_ID) == {"totalRules": 2, "activeRules": 1}


@pytest.mark.parametrize("threshold,applies", [("5.0", True), ("5.7", True), (" 6 ", False)])
def test_quantity_threshold_accepts_decimal_text(store, threshold, applies):
    rule = make_rule("bulk", "quantity")
    store.add_automatic_discount(rule, entries=[make_entry(rule.id, threshold, discount_type="flat", value=40)])
    assert _best(store, make_cart((100, 5))).applicable is applies


@pytest.mark.parametrize("threshold", ["inf", "nan", ""])
def test_quantity_threshold_rejects_non_finite_text(store, threshold):
    rule = EvaluableRule(
        rule=make_rule("bulk", "quantity"),
        variant=NonTieredVariant(entries=[make_entry("bulk", threshold, value=10)]),
    )
    with pytest.raises(RuleConfigurationError):
        evaluate_rule(rule, make_cart((100, 5)), CustomerType.NEW)


def test_evaluate_rule_accepts_known_customer_type(store):
    rule = EvaluableRule(
        rule=make_rule("loyalty", "returning_customer"),
        variant=NonTieredVariant(entries=[make_entry("loyalty", value=10)]),
    )
    assert evaluate_rule(rule, make_cart((1000, 1)), CustomerType.NEW) is None
    assert evaluate_rule(rule, make_cart((1000, 1)), CustomerType.RETURNING).amount == 100
