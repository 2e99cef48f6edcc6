"""
Error taxonomy for the quota core.

ValidationError is surfaced to the caller immediately. RuleEvaluationError and
DataGapError are recovered where they happen: the offending tariff or usage
entry is skipped and a warning is logged.
"""

from typing import Optional


class QuotaError(Exception):
    """Base class for all quota core errors."""


class ValidationError(QuotaError, ValueError):
    """Raised when a tariff or quoting request is badly configured."""


class RuleEvaluationError(QuotaError):
    """Raised when an activation rule cannot be parsed or evaluated."""

    def __init__(self, message: str, rule: Optional[str] = None):
        super().__init__(message)
        self.rule = rule


class DataGapError(QuotaError):
    """Raised when a usage interval is missing or inconsistent."""


class AggregationCancelled(QuotaError):
    """Raised when an account's aggregation is cancelled mid-period."""

    def __init__(self, account_id: int):
        super().__init__(f"Aggregation of account [{account_id}] was cancelled")
        self.account_id = account_id
