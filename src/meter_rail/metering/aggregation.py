"""
Aggregation Engine

Recomputes billing-period totals from raw events. A recompute always
rescans the whole window and upserts the full value, so running it any
number of times (or concurrently) for the same key converges on the
same row.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import structlog

from ..core.aggregation import aggregate_events, summarize_by_key
from ..core.errors import NotFoundError, ValidationError
from ..core.periods import BillingPeriod, current_period, parse_timestamp, to_iso
from ..persistence import (
    AggregateRepository,
    Database,
    MeterRepository,
    UsageAggregate,
    UsageEventRepository,
    new_id,
)

logger = structlog.get_logger()


def resolve_period(billing_period: Union[str, BillingPeriod, None]) -> BillingPeriod:
    """Accept a key, a BillingPeriod or None (current month)."""
    if billing_period is None:
        return current_period()
    if isinstance(billing_period, BillingPeriod):
        return billing_period
    try:
        return BillingPeriod.parse(billing_period)
    except ValueError as e:
        raise ValidationError(str(e))


@dataclass
class UsageAnalytics:
    """Usage of a creator's meters over a date range."""
    creator_id: str
    start: str
    end: str
    total_usage: float = 0.0
    usage_by_user: Dict[str, float] = field(default_factory=dict)
    usage_by_meter: Dict[str, float] = field(default_factory=dict)
    usage_trend: List[Dict[str, Any]] = field(default_factory=list)
    top_users: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creator_id": self.creator_id,
            "start": self.start,
            "end": self.end,
            "total_usage": self.total_usage,
            "usage_by_user": self.usage_by_user,
            "usage_by_meter": self.usage_by_meter,
            "usage_trend": self.usage_trend,
            "top_users": self.top_users,
        }


class AggregationEngine:
    """Maintains UsageAggregate rows."""

    TOP_USERS = 10

    def __init__(self, db: Database):
        self.meters = MeterRepository(db)
        self.events = UsageEventRepository(db)
        self.aggregates = AggregateRepository(db)

    def recompute_aggregate(
        self,
        meter_id: str,
        user_id: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> UsageAggregate:
        """Rescan events in [start, next_start) and upsert the total."""
        period = resolve_period(billing_period)
        meter = self.meters.get(meter_id)
        if meter is None:
            raise NotFoundError(f"Meter not found: {meter_id}")

        events = self.events.list_in_window(meter_id, user_id, period.start_iso, period.next_start_iso)
        value, count = aggregate_events(meter.aggregation_type, events, meter.unique_property)

        aggregate = self.aggregates.upsert(UsageAggregate(
            id=new_id(),
            meter_id=meter_id,
            user_id=user_id,
            billing_period=period.key,
            period_start=period.start_iso,
            period_end=period.end_iso,
            aggregate_value=value,
            event_count=count,
        ))
        logger.debug(
            "aggregate_recomputed",
            meter_id=meter_id,
            user_id=user_id,
            billing_period=period.key,
            value=value,
            event_count=count,
        )
        return aggregate

    def get_aggregate(
        self,
        meter_id: str,
        user_id: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> Optional[UsageAggregate]:
        period = resolve_period(billing_period)
        return self.aggregates.get(meter_id, user_id, period.key)

    def get_current_usage(
        self,
        meter_id: str,
        user_id: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> float:
        """Aggregate value for the period; 0 when nothing was aggregated yet."""
        aggregate = self.get_aggregate(meter_id, user_id, billing_period)
        return aggregate.aggregate_value if aggregate else 0.0

    def reconcile_period(self, creator_id: str, billing_period: Union[str, BillingPeriod]) -> int:
        """
        Recompute every (meter, user) with events in the period.

        Covers recomputes that were dispatched but never ran.
        Returns the number of aggregates written.
        """
        period = resolve_period(billing_period)
        keys = self.events.active_keys_in_window(creator_id, period.start_iso, period.next_start_iso)
        for meter_id, user_id in keys:
            self.recompute_aggregate(meter_id, user_id, period)
        logger.info("period_reconciled", creator_id=creator_id, billing_period=period.key, aggregates=len(keys))
        return len(keys)

    def get_usage_analytics(
        self,
        creator_id: str,
        start: Union[str, datetime],
        end: Union[str, datetime],
        meter_id: Optional[str] = None,
    ) -> UsageAnalytics:
        """Totals, per-user and per-period trend from stored aggregates."""
        start_iso = to_iso(parse_timestamp(start))
        end_iso = to_iso(parse_timestamp(end))
        if start_iso > end_iso:
            raise ValidationError("start must not be after end")

        rows = self.aggregates.list_in_range(creator_id, start_iso, end_iso, meter_id=meter_id)

        by_user = summarize_by_key(rows, "user_id")
        by_meter = summarize_by_key(rows, "event_name")
        by_period = summarize_by_key(rows, "billing_period")
        top = sorted(by_user.items(), key=lambda item: item[1], reverse=True)[:self.TOP_USERS]

        return UsageAnalytics(
            creator_id=creator_id,
            start=start_iso,
            end=end_iso,
            total_usage=sum(by_user.values()),
            usage_by_user=by_user,
            usage_by_meter=by_meter,
            usage_trend=[{"billing_period": k, "usage": v} for k, v in sorted(by_period.items())],
            top_users=[{"user_id": u, "usage": v} for u, v in top],
        )
