class DiscountEngineError(Exception):
    """Base class for errors raised inside the discount engine."""


class RuleConfigurationError(DiscountEngineError):
    """An automatic discount rule is configured in a way it cannot be evaluated."""

    def __init__(self, rule_id: str, detail: str):
        super().__init__(f"rule {rule_id}: {detail}")
        self.rule_id = rule_id
        self.detail = detail


class StorageError(DiscountEngineError):
    pass


class DuplicateCouponError(StorageError):
    pass
