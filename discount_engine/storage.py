import logging
import threading
from typing import Dict, List, Optional, Tuple

from .errors import DuplicateCouponError, StorageError
from .models import (
    AutomaticDiscountRule,
    Coupon,
    CouponUsageRecord,
    DiscountRule,
    DiscountTier,
    RejectionReason,
    RuleStatus,
    UsageClaim,
)

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _matches_identity(record: CouponUsageRecord, phone: Optional[str], email: Optional[str]) -> bool:
    if phone and record.customerPhone == phone:
        return True
    if email and record.customerEmail == email:
        return True
    return False


class DiscountStore:
    """
    In-memory storage collaborator.

    Reads return copies of the lists held here. Coupon redemptions go
    through claim_coupon_usage, which serializes the count-then-insert
    sequence per coupon.
    """

    def __init__(self):
        # (storeId, code) -> Coupon
        self.coupons: Dict[Tuple[str, str], Coupon] = {}
        # ruleId -> rule, tiers, entries
        self.rules: Dict[str, AutomaticDiscountRule] = {}
        self.tiers: Dict[str, List[DiscountTier]] = {}
        self.entries: Dict[str, List[DiscountRule]] = {}
        # (storeId, orderId, phone, email)
        self.orders: List[Tuple[str, str, Optional[str], Optional[str]]] = []
        self.usage: List[CouponUsageRecord] = []

        self._data_lock = threading.RLock()
        self._registry_lock = threading.Lock()
        self._coupon_locks: Dict[str, threading.Lock] = {}

    # ---------------------------
    # Seeding
    # ---------------------------

    def add_coupon(self, coupon: Coupon) -> Coupon:
        code = normalize_code(coupon.code)
        key = (coupon.storeId, code)
        with self._data_lock:
            if key in self.coupons:
                raise DuplicateCouponError(f"Coupon code {code} already exists for store {coupon.storeId}")
            stored = coupon.model_copy(update={"code": code})
            self.coupons[key] = stored
        return stored

    def add_automatic_discount(
        self,
        rule: AutomaticDiscountRule,
        tiers: Optional[List[DiscountTier]] = None,
        entries: Optional[List[DiscountRule]] = None,
    ) -> AutomaticDiscountRule:
        with self._data_lock:
            if rule.id in self.rules:
                raise StorageError(f"Automatic discount {rule.id} already exists")
            self.rules[rule.id] = rule
            self.tiers[rule.id] = sorted(tiers or [], key=lambda t: t.order)
            self.entries[rule.id] = list(entries or [])
        return rule

    def record_order(self, store_id: str, order_id: str, phone: Optional[str] = None, email: Optional[str] = None) -> None:
        with self._data_lock:
            self.orders.append((store_id, order_id, phone, email))

    # ---------------------------
    # Queries
    # ---------------------------

    def list_coupons(self, store_id: Optional[str] = None) -> List[Coupon]:
        with self._data_lock:
            return [c for (sid, _), c in self.coupons.items() if store_id is None or sid == store_id]

    def list_automatic_discounts(self, store_id: Optional[str] = None) -> List[AutomaticDiscountRule]:
        with self._data_lock:
            return [r for r in self.rules.values() if store_id is None or r.storeId == store_id]

    def list_active_automatic_discounts(self, store_id: str) -> List[AutomaticDiscountRule]:
        return [r for r in self.list_automatic_discounts(store_id) if r.status == RuleStatus.ACTIVE]

    def get_tiers(self, rule_id: str) -> List[DiscountTier]:
        with self._data_lock:
            return list(self.tiers.get(rule_id, []))

    def get_rule_entries(self, rule_id: str) -> List[DiscountRule]:
        with self._data_lock:
            return list(self.entries.get(rule_id, []))

    def count_prior_orders(self, store_id: str, phone: Optional[str] = None, email: Optional[str] = None) -> int:
        if not phone and not email:
            return 0
        with self._data_lock:
            return sum(
                1
                for sid, _, order_phone, order_email in self.orders
                if sid == store_id and ((phone and order_phone == phone) or (email and order_email == email))
            )

    def find_coupon(self, store_id: str, code: str) -> Optional[Coupon]:
        with self._data_lock:
            return self.coupons.get((store_id, normalize_code(code)))

    def get_coupon(self, coupon_id: str) -> Optional[Coupon]:
        with self._data_lock:
            for coupon in self.coupons.values():
                if coupon.id == coupon_id:
                    return coupon
        return None

    def count_coupon_usage(self, coupon_id: str, phone: Optional[str] = None, email: Optional[str] = None) -> int:
        """Count usage for a coupon; with phone and/or email, only records matching either."""
        with self._data_lock:
            records = [r for r in self.usage if r.couponId == coupon_id]
        if phone is None and email is None:
            return len(records)
        return sum(1 for r in records if _matches_identity(r, phone, email))

    def list_coupon_usage(self, coupon_id: str) -> List[CouponUsageRecord]:
        with self._data_lock:
            return [r for r in self.usage if r.couponId == coupon_id]

    # ---------------------------
    # Writes
    # ---------------------------

    def append_coupon_usage(self, record: CouponUsageRecord) -> CouponUsageRecord:
        with self._data_lock:
            self.usage.append(record)
        return record

    def coupon_lock(self, coupon_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._coupon_locks.get(coupon_id)
            if lock is None:
                lock = self._coupon_locks[coupon_id] = threading.Lock()
            return lock

    def claim_coupon_usage(self, coupon: Coupon, record: CouponUsageRecord) -> UsageClaim:
        """
        Check the coupon's usage caps and append the record as one step.

        Holds the coupon's own lock for the whole sequence, so two claims on
        the same coupon never both observe the last free slot.
        """
        with self.coupon_lock(coupon.id):
            if coupon.usageLimitTotal is not None:
                used = self.count_coupon_usage(coupon.id)
                if used >= coupon.usageLimitTotal:
                    return UsageClaim(recorded=False, rejectionReason=RejectionReason.LIMIT_EXCEEDED)

            if coupon.usageLimitPerCustomer is not None and (record.customerPhone or record.customerEmail):
                used = per_customer_usage(self, coupon.id, record.customerPhone, record.customerEmail)
                if used >= coupon.usageLimitPerCustomer:
                    return UsageClaim(recorded=False, rejectionReason=RejectionReason.PER_CUSTOMER_LIMIT_EXCEEDED)

            self.append_coupon_usage(record)
        return UsageClaim(recorded=True, record=record)


def per_customer_usage(store, coupon_id: str, phone: Optional[str], email: Optional[str]) -> int:
    """Usage count matched by phone, falling back to email when phone finds nothing."""
    used = 0
    if phone:
        used = store.count_coupon_usage(coupon_id, phone=phone)
    if used == 0 and email:
        used = store.count_coupon_usage(coupon_id, email=email)
    return used


STORE = DiscountStore()
