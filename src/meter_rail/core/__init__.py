"""
METER RAIL - Core Module

Pure building blocks shared by the metering, enforcement and billing layers:
error taxonomy, billing periods, aggregation reducers and the limit
policy evaluator.
"""

from .errors import (
    MeteringError,
    ValidationError,
    NotFoundError,
    LimitExceededError,
    ProviderError,
)
from .periods import BillingCycle, BillingPeriod, current_period, utc_now, to_iso, parse_timestamp
from .aggregation import AggregationType, aggregate_events
from .limits import LimitPolicy, LimitEvaluation, evaluate_limit, DEFAULT_SOFT_LIMIT_THRESHOLD

__all__ = [
    "MeteringError",
    "ValidationError",
    "NotFoundError",
    "LimitExceededError",
    "ProviderError",
    "BillingCycle",
    "BillingPeriod",
    "current_period",
    "utc_now",
    "to_iso",
    "parse_timestamp",
    "AggregationType",
    "aggregate_events",
    "LimitPolicy",
    "LimitEvaluation",
    "evaluate_limit",
    "DEFAULT_SOFT_LIMIT_THRESHOLD",
]
