"""
Upstream quota governance: token bucket, daily budget and adaptive backoff.
"""
from .governor import (
    BackoffClass,
    BackoffCurve,
    BudgetBucket,
    QuotaConfig,
    QuotaDecision,
    QuotaGovernor,
    QuotaState,
    classify_error,
    next_backoff_ms,
)

__all__ = [
    "BackoffClass",
    "BackoffCurve",
    "BudgetBucket",
    "QuotaConfig",
    "QuotaDecision",
    "QuotaGovernor",
    "QuotaState",
    "classify_error",
    "next_backoff_ms",
]
