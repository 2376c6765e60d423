from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


class RuleType(str, Enum):
    TIERED_VALUE = "tiered_value"
    NEW_CUSTOMER = "new_customer"
    RETURNING_CUSTOMER = "returning_customer"
    CATEGORY = "category"
    QUANTITY = "quantity"


class OrderTypeScope(str, Enum):
    ALL = "all"
    ONLINE = "online"
    COD = "cod"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class CouponStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    EXPIRED = "expired"


class ApplicableScope(str, Enum):
    ALL = "all"
    PRODUCTS = "products"
    CATEGORIES = "categories"


class CustomerTarget(str, Enum):
    ALL = "all"
    NEW = "new"
    RETURNING = "returning"


class CustomerType(str, Enum):
    NEW = "new"
    RETURNING = "returning"


class DiscountSource(str, Enum):
    NONE = "none"
    COUPON = "coupon"
    AUTOMATIC = "automatic"


class RejectionReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    NOT_YET_ACTIVE = "NOT_YET_ACTIVE"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    WRONG_CUSTOMER_TYPE = "WRONG_CUSTOMER_TYPE"
    NOT_FIRST_ORDER = "NOT_FIRST_ORDER"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    PER_CUSTOMER_LIMIT_EXCEEDED = "PER_CUSTOMER_LIMIT_EXCEEDED"
    WRONG_PAYMENT_METHOD = "WRONG_PAYMENT_METHOD"


# ---------------------------
# Cart & customer
# ---------------------------

class CartLine(BaseModel):
    itemId: str
    categoryId: Optional[str] = None
    unitPrice: float
    quantity: int


class CartSnapshot(BaseModel):
    """
    Lines of a cart at evaluation time. Totals are always derived from the
    lines, never stored alongside them.
    """

    lines: List[CartLine] = Field(default_factory=list)

    @property
    def subtotal(self) -> float:
        return sum(line.unitPrice * line.quantity for line in self.lines)

    @property
    def itemCount(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def categoriesPresent(self) -> Set[str]:
        return {line.categoryId for line in self.lines if line.categoryId}

    def subtotal_for_category(self, category_id: str) -> float:
        return sum(
            line.unitPrice * line.quantity
            for line in self.lines
            if line.categoryId == category_id
        )

    @property
    def is_empty(self) -> bool:
        return not self.lines


class CustomerIdentity(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def normalized_phone(self) -> Optional[str]:
        return (self.phone or "").strip() or None

    @property
    def normalized_email(self) -> Optional[str]:
        return (self.email or "").strip() or None

    @property
    def is_known(self) -> bool:
        return bool(self.normalized_phone or self.normalized_email)


# ---------------------------
# Automatic discounts
# ---------------------------

class AutomaticDiscountRule(BaseModel):
    id: str
    storeId: str
    name: str
    description: Optional[str] = None
    ruleType: RuleType
    orderTypeScope: OrderTypeScope = OrderTypeScope.ALL
    status: RuleStatus = RuleStatus.ACTIVE
    startDate: datetime
    expiryDate: datetime

    # higher priority wins ties, then the earlier created rule
    priority: int = 0
    createdAt: Optional[datetime] = None


class DiscountTier(BaseModel):
    id: str
    ruleId: str
    order: int
    minOrderValue: Optional[float] = None
    discountType: DiscountType
    discountValue: float


class DiscountRule(BaseModel):
    """A non-tiered rule entry; ruleValue is a category id or an item-count threshold."""

    id: str
    ruleId: str
    ruleValue: str = ""
    discountType: DiscountType
    discountValue: float


class TieredVariant(BaseModel):
    kind: Literal["tiered"] = "tiered"
    tiers: List[DiscountTier] = Field(default_factory=list)


class NonTieredVariant(BaseModel):
    kind: Literal["entries"] = "entries"
    entries: List[DiscountRule] = Field(default_factory=list)


RuleVariant = Union[TieredVariant, NonTieredVariant]


class EvaluableRule(BaseModel):
    rule: AutomaticDiscountRule
    variant: RuleVariant = Field(discriminator="kind")


# ---------------------------
# Coupons
# ---------------------------

class Coupon(BaseModel):
    id: str
    storeId: str
    code: str
    description: Optional[str] = None
    discountType: DiscountType
    discountValue: float
    maxDiscount: Optional[float] = None
    minOrderValue: Optional[float] = None

    startDate: datetime
    expiryDate: datetime

    usageLimitTotal: Optional[int] = None
    usageLimitPerCustomer: Optional[int] = None

    applicableScope: ApplicableScope = ApplicableScope.ALL
    customerType: CustomerTarget = CustomerTarget.ALL
    isFirstOrderOnly: bool = False
    orderTypeScope: OrderTypeScope = OrderTypeScope.ALL
    status: CouponStatus = CouponStatus.ACTIVE


class CouponUsageRecord(BaseModel):
    id: str
    couponId: str
    orderId: str
    customerPhone: Optional[str] = None
    customerEmail: Optional[str] = None
    discountApplied: float = 0.0
    usedAt: datetime


class UsageClaim(BaseModel):
    recorded: bool
    record: Optional[CouponUsageRecord] = None
    rejectionReason: Optional[RejectionReason] = None


# ---------------------------
# Outcome
# ---------------------------

class DiscountOutcome(BaseModel):
    applicable: bool = False
    source: DiscountSource = DiscountSource.NONE
    ruleOrCouponId: Optional[str] = None
    label: Optional[str] = None
    discountType: Optional[DiscountType] = None
    discountValue: Optional[float] = None
    discountAmount: float = 0.0
    finalTotal: float = 0.0
    rejectionReason: Optional[RejectionReason] = None
    message: Optional[str] = None


# ---------------------------
# Request / response payloads
# ---------------------------

class EvaluationRequest(BaseModel):
    storeId: str
    cart: CartSnapshot
    customer: CustomerIdentity = Field(default_factory=CustomerIdentity)
    paymentMethod: str = "online"


class CouponValidationRequest(EvaluationRequest):
    couponCode: str


class ResolveRequest(EvaluationRequest):
    couponCode: Optional[str] = None


class AutomaticDiscountPayload(BaseModel):
    rule: AutomaticDiscountRule
    tiers: List[DiscountTier] = Field(default_factory=list)
    entries: List[DiscountRule] = Field(default_factory=list)


class UsageRequest(BaseModel):
    couponId: str
    orderId: str
    customer: CustomerIdentity = Field(default_factory=CustomerIdentity)
    discountApplied: float = 0.0


class CouponStats(BaseModel):
    totalCoupons: int
    activeCoupons: int
    totalUsage: int
    totalDiscountGiven: float


class AutomaticDiscountStats(BaseModel):
    totalRules: int
    activeRules: int
