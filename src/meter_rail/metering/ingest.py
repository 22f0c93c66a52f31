"""
Usage Ingest

The critical path of usage tracking:

    enforcement check -> (accepted) persist event -> dispatch recompute + limit check

A blocked event is never written. Aggregation and alerting are handed to
the dispatcher and do not hold up the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import math
import structlog

from ..core.errors import LimitExceededError, NotFoundError, ValidationError
from ..core.periods import BillingCycle, BillingPeriod, parse_timestamp, to_iso
from ..enforcement.gate import EnforcementEngine, EnforcementResult
from ..persistence import (
    AssignmentRepository,
    Database,
    MeterRepository,
    PlanLimitRepository,
    TierRepository,
    UsageEvent,
    UsageEventRepository,
    new_id,
)
from .aggregation import AggregationEngine, resolve_period
from .alerts import LimitMonitor
from .dispatch import Dispatcher, InlineDispatcher

logger = structlog.get_logger()


@dataclass
class TrackUsageRequest:
    """One usage event as submitted by a caller."""
    event_name: str
    user_id: str
    value: float = 1
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: Union[datetime, str, None] = None


@dataclass
class TrackUsageResult:
    """Accepted event plus the enforcement outcome (for soft warnings)."""
    event_id: str
    meter_id: str
    billing_period: str
    enforcement: EnforcementResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "meter_id": self.meter_id,
            "billing_period": self.billing_period,
            "enforcement": self.enforcement.to_dict(),
        }


@dataclass
class UsageSummary:
    """Usage of one meter by one user against one plan."""
    meter_id: str
    meter_name: str
    user_id: str
    plan_name: str
    billing_period: str
    current_usage: float
    limit_value: Optional[float] = None
    usage_percentage: Optional[float] = None
    overage_amount: float = 0.0
    alerts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meter_id": self.meter_id,
            "meter_name": self.meter_name,
            "user_id": self.user_id,
            "plan_name": self.plan_name,
            "billing_period": self.billing_period,
            "current_usage": self.current_usage,
            "limit_value": self.limit_value,
            "usage_percentage": self.usage_percentage,
            "overage_amount": self.overage_amount,
            "alerts": self.alerts,
        }


def _validate_value(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("value must be a number")
    if not math.isfinite(value):
        raise ValidationError("value must be finite")
    if value < 0:
        raise ValidationError("value must not be negative")
    return float(value)


class UsageTracker:
    """
    Records usage events behind the enforcement gate.

    Usage:
        tracker = UsageTracker(db, enforcement, aggregation, monitor, dispatcher)
        result = tracker.track_usage("creator_1", TrackUsageRequest("api_calls", "user_1"))
        if result.enforcement.should_warn:
            ...
    """

    def __init__(
        self,
        db: Database,
        enforcement: EnforcementEngine,
        aggregation: AggregationEngine,
        monitor: LimitMonitor,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.meters = MeterRepository(db)
        self.plan_limits = PlanLimitRepository(db)
        self.events = UsageEventRepository(db)
        self.assignments = AssignmentRepository(db)
        self.tiers = TierRepository(db)
        self.enforcement = enforcement
        self.aggregation = aggregation
        self.monitor = monitor
        self.dispatcher = dispatcher or InlineDispatcher()

    def track_usage(self, creator_id: str, request: TrackUsageRequest) -> TrackUsageResult:
        """
        Record one usage event.

        Raises:
            ValidationError: missing user id, bad value or timestamp
            NotFoundError: no active meter for the event name
            LimitExceededError: the tier's hard cap would be exceeded
        """
        if not request.user_id:
            raise ValidationError("user_id is required")
        if not request.event_name:
            raise ValidationError("event_name is required")
        value = _validate_value(request.value)
        try:
            timestamp = parse_timestamp(request.timestamp)
        except ValueError as e:
            raise ValidationError(str(e))
        properties = request.properties or {}
        if not isinstance(properties, dict):
            raise ValidationError("properties must be an object")

        meter = self.meters.get_by_event(creator_id, request.event_name)
        if meter is None:
            raise NotFoundError(f"Meter not found or inactive: {request.event_name}")

        # Must complete before the insert: a blocked event is never persisted
        enforcement = self.enforcement.check_enforcement(
            customer_id=request.user_id,
            creator_id=creator_id,
            metric_name=meter.event_name,
            requested_increment=value,
            at=timestamp,
        )
        if enforcement.should_block:
            raise LimitExceededError(
                enforcement.reason or "Usage limit exceeded",
                current_usage=enforcement.current_usage,
                limit_value=enforcement.limit_value,
            )

        event = self.events.create(UsageEvent(
            id=new_id(),
            meter_id=meter.id,
            user_id=request.user_id,
            event_value=value,
            properties=properties,
            event_timestamp=to_iso(timestamp),
        ))

        period_key = enforcement.billing_period or BillingPeriod.for_instant(BillingCycle.MONTHLY, timestamp).key
        self.dispatcher.submit(
            "refresh_usage", self._refresh_usage, meter.id, request.user_id, period_key
        )

        logger.info(
            "usage_tracked",
            event_id=event.id,
            meter_id=meter.id,
            user_id=request.user_id,
            value=value,
            billing_period=period_key,
            decision=enforcement.decision.value,
        )
        return TrackUsageResult(
            event_id=event.id,
            meter_id=meter.id,
            billing_period=period_key,
            enforcement=enforcement,
        )

    def _refresh_usage(self, meter_id: str, user_id: str, billing_period: str) -> None:
        self.aggregation.recompute_aggregate(meter_id, user_id, billing_period)
        self.monitor.check_limits(meter_id, user_id, billing_period)

    def get_usage_summary(
        self,
        meter_id: str,
        user_id: str,
        plan_name: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> UsageSummary:
        """
        Current usage, the plan's limit and the period's open alerts.

        Without a period, the user's current one under their tier's billing
        cycle is used (monthly when they hold no tier).
        """
        meter = self.meters.get(meter_id)
        if meter is None:
            raise NotFoundError(f"Meter not found: {meter_id}")

        if billing_period is None:
            period = BillingPeriod.for_instant(self._billing_cycle(user_id, meter.creator_id))
        else:
            period = resolve_period(billing_period)
        current_usage = self.aggregation.get_current_usage(meter_id, user_id, period)
        limit = self.plan_limits.get(meter_id, plan_name)
        limit_value = limit.limit_value if limit and limit.limit_value else None

        usage_percentage = None
        overage_amount = 0.0
        if limit_value:
            usage_percentage = current_usage / limit_value * 100
            overage_amount = max(0.0, current_usage - limit_value)

        alerts = self.monitor.list_alerts(meter_id, user_id, plan_name, billing_period=period.key)

        return UsageSummary(
            meter_id=meter_id,
            meter_name=meter.display_name,
            user_id=user_id,
            plan_name=plan_name.lower(),
            billing_period=period.key,
            current_usage=current_usage,
            limit_value=limit_value,
            usage_percentage=usage_percentage,
            overage_amount=overage_amount,
            alerts=[a.to_dict() for a in alerts],
        )

    def _billing_cycle(self, user_id: str, creator_id: str) -> str:
        assignment = self.assignments.get_current(user_id, creator_id)
        tier = self.tiers.get(assignment.tier_id) if assignment else None
        return tier.billing_cycle if tier else BillingCycle.MONTHLY.value
