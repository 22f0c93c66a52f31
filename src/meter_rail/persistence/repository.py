"""
Repository Layer for Metering

CRUD and upsert operations for meters, plan limits, events, aggregates
and alerts. Upserts target the table's UNIQUE natural key and re-select
the row afterwards, so concurrent writers converge on one row.

Methods that take `executor` run on it when given (a Transaction from
`Database.transaction()`), otherwise on their own connection.
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import structlog

from .database import Database, get_database
from .models import (
    UsageMeter,
    MeterPlanLimit,
    UsageEvent,
    UsageAggregate,
    UsageAlert,
)

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class MeterRepository:
    """Repository for usage meters."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, meter: UsageMeter, executor: Any = None) -> UsageMeter:
        """Insert a meter. Raises the driver's IntegrityError on a duplicate event name."""
        (executor or self.db).execute(
            """INSERT INTO usage_meters
               (id, creator_id, event_name, display_name, description,
                aggregation_type, unit_name, billing_model, unique_property,
                active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            meter.to_db_tuple()
        )
        logger.info("meter_created", meter_id=meter.id, creator_id=meter.creator_id, event_name=meter.event_name)
        return meter

    def get(self, meter_id: str) -> Optional[UsageMeter]:
        results = self.db.execute(
            "SELECT * FROM usage_meters WHERE id = ?",
            (meter_id,)
        )
        return UsageMeter.from_row(results[0]) if results else None

    def get_by_event(self, creator_id: str, event_name: str, active_only: bool = True) -> Optional[UsageMeter]:
        """Get a creator's meter by event name."""
        query = "SELECT * FROM usage_meters WHERE creator_id = ? AND event_name = ?"
        params: Tuple[Any, ...] = (creator_id, event_name)
        if active_only:
            query += " AND active = ?"
            params += (True,)
        results = self.db.execute(query, params)
        return UsageMeter.from_row(results[0]) if results else None

    def list_by_creator(self, creator_id: str, include_inactive: bool = False) -> List[UsageMeter]:
        """List a creator's meters, newest first."""
        query = "SELECT * FROM usage_meters WHERE creator_id = ?"
        params: Tuple[Any, ...] = (creator_id,)
        if not include_inactive:
            query += " AND active = ?"
            params += (True,)
        query += " ORDER BY created_at DESC"
        return [UsageMeter.from_row(r) for r in self.db.execute(query, params)]

    def set_active(self, meter_id: str, active: bool) -> None:
        self.db.execute(
            "UPDATE usage_meters SET active = ?, updated_at = ? WHERE id = ?",
            (active, _now(), meter_id)
        )
        logger.info("meter_active_changed", meter_id=meter_id, active=active)


class PlanLimitRepository:
    """Repository for per-plan meter limits."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, limit: MeterPlanLimit, executor: Any = None) -> None:
        """Insert or replace the limit for (meter, plan)."""
        (executor or self.db).execute(
            """INSERT INTO meter_plan_limits
               (id, meter_id, plan_name, limit_value, overage_price,
                soft_limit_threshold, hard_cap, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (meter_id, plan_name) DO UPDATE SET
                limit_value = excluded.limit_value,
                overage_price = excluded.overage_price,
                soft_limit_threshold = excluded.soft_limit_threshold,
                hard_cap = excluded.hard_cap,
                updated_at = excluded.updated_at""",
            limit.to_db_tuple()
        )

    def get(self, meter_id: str, plan_name: str) -> Optional[MeterPlanLimit]:
        results = self.db.execute(
            "SELECT * FROM meter_plan_limits WHERE meter_id = ? AND plan_name = ?",
            (meter_id, plan_name.lower())
        )
        return MeterPlanLimit.from_row(results[0]) if results else None

    def list_for_meter(self, meter_id: str) -> List[MeterPlanLimit]:
        results = self.db.execute(
            "SELECT * FROM meter_plan_limits WHERE meter_id = ? ORDER BY plan_name ASC",
            (meter_id,)
        )
        return [MeterPlanLimit.from_row(r) for r in results]


class UsageEventRepository:
    """Repository for append-only usage events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, event: UsageEvent) -> UsageEvent:
        self.db.execute(
            """INSERT INTO usage_events
               (id, meter_id, user_id, event_value, properties,
                event_timestamp, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            event.to_db_tuple()
        )
        logger.debug("usage_event_created", event_id=event.id, meter_id=event.meter_id, user_id=event.user_id)
        return event

    def list_in_window(self, meter_id: str, user_id: str, start: str, next_start: str) -> List[UsageEvent]:
        """Events for (meter, user) with start <= timestamp < next_start."""
        results = self.db.execute(
            """SELECT * FROM usage_events
               WHERE meter_id = ? AND user_id = ?
                 AND event_timestamp >= ? AND event_timestamp < ?
               ORDER BY event_timestamp ASC""",
            (meter_id, user_id, start, next_start)
        )
        return [UsageEvent.from_row(r) for r in results]

    def count_in_window(self, meter_id: str, user_id: str, start: str, next_start: str) -> int:
        results = self.db.execute(
            """SELECT COUNT(*) as cnt FROM usage_events
               WHERE meter_id = ? AND user_id = ?
                 AND event_timestamp >= ? AND event_timestamp < ?""",
            (meter_id, user_id, start, next_start)
        )
        return int(results[0]["cnt"]) if results else 0

    def active_keys_in_window(self, creator_id: str, start: str, next_start: str) -> List[Tuple[str, str]]:
        """Distinct (meter_id, user_id) pairs with events in the window."""
        results = self.db.execute(
            """SELECT DISTINCT e.meter_id AS meter_id, e.user_id AS user_id
               FROM usage_events e
               JOIN usage_meters m ON m.id = e.meter_id
               WHERE m.creator_id = ?
                 AND e.event_timestamp >= ? AND e.event_timestamp < ?
               ORDER BY e.meter_id, e.user_id""",
            (creator_id, start, next_start)
        )
        return [(r["meter_id"], r["user_id"]) for r in results]


class AggregateRepository:
    """Repository for billing-period aggregates."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, aggregate: UsageAggregate) -> UsageAggregate:
        """Write the full recomputed value for (meter, user, period)."""
        self.db.execute(
            """INSERT INTO usage_aggregates
               (id, meter_id, user_id, billing_period, period_start, period_end,
                aggregate_value, event_count, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (meter_id, user_id, billing_period) DO UPDATE SET
                period_start = excluded.period_start,
                period_end = excluded.period_end,
                aggregate_value = excluded.aggregate_value,
                event_count = excluded.event_count,
                updated_at = excluded.updated_at""",
            aggregate.to_db_tuple()
        )
        stored = self.get(aggregate.meter_id, aggregate.user_id, aggregate.billing_period)
        return stored or aggregate

    def get(self, meter_id: str, user_id: str, billing_period: str) -> Optional[UsageAggregate]:
        results = self.db.execute(
            "SELECT * FROM usage_aggregates WHERE meter_id = ? AND user_id = ? AND billing_period = ?",
            (meter_id, user_id, billing_period)
        )
        return UsageAggregate.from_row(results[0]) if results else None

    def list_for_period(self, creator_id: str, billing_period: str) -> List[UsageAggregate]:
        """All aggregates of a creator's meters for one period."""
        results = self.db.execute(
            """SELECT a.* FROM usage_aggregates a
               JOIN usage_meters m ON m.id = a.meter_id
               WHERE m.creator_id = ? AND a.billing_period = ?
               ORDER BY a.meter_id, a.user_id""",
            (creator_id, billing_period)
        )
        return [UsageAggregate.from_row(r) for r in results]

    def list_in_range(self, creator_id: str, start: str, end: str, meter_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Aggregate rows whose period starts within [start, end]."""
        query = """SELECT a.*, m.event_name AS event_name FROM usage_aggregates a
                   JOIN usage_meters m ON m.id = a.meter_id
                   WHERE m.creator_id = ? AND a.period_start >= ? AND a.period_start <= ?"""
        params: Tuple[Any, ...] = (creator_id, start, end)
        if meter_id:
            query += " AND a.meter_id = ?"
            params += (meter_id,)
        query += " ORDER BY a.period_start ASC"
        return self.db.execute(query, params)


class AlertRepository:
    """Repository for usage alerts."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, alert: UsageAlert) -> UsageAlert:
        """
        Insert an alert or refresh the figures of the existing one.

        triggered_at and the acknowledgement of an existing alert are kept.
        """
        self.db.execute(
            """INSERT INTO usage_alerts
               (id, meter_id, user_id, plan_name, alert_type, billing_period,
                threshold_percentage, current_usage, limit_value, triggered_at,
                acknowledged, acknowledged_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (meter_id, user_id, plan_name, alert_type, billing_period) DO UPDATE SET
                threshold_percentage = excluded.threshold_percentage,
                current_usage = excluded.current_usage,
                limit_value = excluded.limit_value""",
            alert.to_db_tuple()
        )
        results = self.db.execute(
            """SELECT * FROM usage_alerts
               WHERE meter_id = ? AND user_id = ? AND plan_name = ?
                 AND alert_type = ? AND billing_period = ?""",
            (alert.meter_id, alert.user_id, alert.plan_name, alert.alert_type, alert.billing_period)
        )
        return UsageAlert.from_row(results[0]) if results else alert

    def get(self, alert_id: str) -> Optional[UsageAlert]:
        results = self.db.execute("SELECT * FROM usage_alerts WHERE id = ?", (alert_id,))
        return UsageAlert.from_row(results[0]) if results else None

    def list_for_user(
        self,
        meter_id: str,
        user_id: str,
        plan_name: Optional[str] = None,
        include_acknowledged: bool = False,
        billing_period: Optional[str] = None,
    ) -> List[UsageAlert]:
        """Alerts for (meter, user), newest first."""
        query = "SELECT * FROM usage_alerts WHERE meter_id = ? AND user_id = ?"
        params: Tuple[Any, ...] = (meter_id, user_id)
        if plan_name:
            query += " AND plan_name = ?"
            params += (plan_name.lower(),)
        if billing_period:
            query += " AND billing_period = ?"
            params += (billing_period,)
        if not include_acknowledged:
            query += " AND acknowledged = ?"
            params += (False,)
        query += " ORDER BY triggered_at DESC"
        return [UsageAlert.from_row(r) for r in self.db.execute(query, params)]

    def acknowledge(self, alert_id: str) -> None:
        self.db.execute(
            "UPDATE usage_alerts SET acknowledged = ?, acknowledged_at = ? WHERE id = ?",
            (True, _now(), alert_id)
        )
        logger.info("alert_acknowledged", alert_id=alert_id)
