"""
METER RAIL - Metering Module

Meter registry, usage ingest, aggregation and limit alerts.
"""

from .registry import MeterRegistry, MeterSpec, PlanLimitSpec
from .aggregation import AggregationEngine, UsageAnalytics, resolve_period
from .alerts import LimitMonitor
from .dispatch import Dispatcher, InlineDispatcher, ThreadPoolDispatcher
from .ingest import UsageTracker, TrackUsageRequest, TrackUsageResult, UsageSummary

__all__ = [
    "MeterRegistry",
    "MeterSpec",
    "PlanLimitSpec",
    "AggregationEngine",
    "UsageAnalytics",
    "resolve_period",
    "LimitMonitor",
    "Dispatcher",
    "InlineDispatcher",
    "ThreadPoolDispatcher",
    "UsageTracker",
    "TrackUsageRequest",
    "TrackUsageResult",
    "UsageSummary",
]
