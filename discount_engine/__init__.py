from .coupons import coupon_stats, coupon_usage_details, record_coupon_usage, rejection_message, validate_coupon
from .errors import DiscountEngineError, RuleConfigurationError, StorageError
from .logic import calculate_discount, classify_customer, is_payment_compatible, is_within_window
from .resolution import resolve_discount
from .rules import automatic_discount_stats, evaluate_rule, select_best_automatic
from .storage import DiscountStore

__all__ = [
    "DiscountEngineError",
    "DiscountStore",
    "RuleConfigurationError",
    "StorageError",
    "automatic_discount_stats",
    "calculate_discount",
    "classify_customer",
    "coupon_stats",
    "coupon_usage_details",
    "evaluate_rule",
    "is_payment_compatible",
    "is_within_window",
    "record_coupon_usage",
    "rejection_message",
    "resolve_discount",
    "select_best_automatic",
    "validate_coupon",
]
