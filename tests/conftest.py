import uuid
from datetime import datetime, timedelta, timezone

import pytest

from discount_engine.models import (
    AutomaticDiscountRule,
    CartLine,
    CartSnapshot,
    Coupon,
    CustomerIdentity,
    DiscountRule,
    DiscountTier,
)
from discount_engine.storage import DiscountStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
STORE_ID = "store-1"


def make_cart(*lines):
    """Build a cart from (price, quantity) or (price, quantity, category) tuples."""
    cart_lines = []
    for i, line in enumerate(lines):
        price, qty = line[0], line[1]
        category = line[2] if len(line) > 2 else None
        cart_lines.append(CartLine(itemId=f"item-{i}", categoryId=category, unitPrice=price, quantity=qty))
    return CartSnapshot(lines=cart_lines)


def make_coupon(code="SAVE10", **overrides):
    fields = dict(
        id=f"coupon-{code.lower()}",
        storeId=STORE_ID,
        code=code,
        discountType="percentage",
        discountValue=10,
        startDate=NOW - timedelta(days=1),
        expiryDate=NOW + timedelta(days=30),
    )
    fields.update(overrides)
    return Coupon(**fields)


def make_rule(rule_id, rule_type, **overrides):
    fields = dict(
        id=rule_id,
        storeId=STORE_ID,
        name=rule_id.replace("-", " ").title(),
        ruleType=rule_type,
        startDate=NOW - timedelta(days=1),
        expiryDate=NOW + timedelta(days=30),
    )
    fields.update(overrides)
    return AutomaticDiscountRule(**fields)


def make_tier(rule_id, order, min_order_value, discount_type="percentage", value=5):
    return DiscountTier(
        id=f"{rule_id}-tier-{order}",
        ruleId=rule_id,
        order=order,
        minOrderValue=min_order_value,
        discountType=discount_type,
        discountValue=value,
    )


def make_entry(rule_id, rule_value="", discount_type="percentage", value=10):
    return DiscountRule(
        id=f"{rule_id}-entry-{uuid.uuid4().hex[:6]}",
        ruleId=rule_id,
        ruleValue=rule_value,
        discountType=discount_type,
        discountValue=value,
    )


@pytest.fixture
def store():
    """Fresh in-memory store for each test."""
    return DiscountStore()


@pytest.fixture
def customer():
    return CustomerIdentity(phone="9876543210", email="asha@example.com")


@pytest.fixture
def returning_customer(store, customer):
    store.record_order(STORE_ID, "order-old-1", phone=customer.phone)
    return customer
