"""
Limit Monitor

Raises alerts after an aggregate changes. Runs off the ingest path and
never blocks usage; the same policy evaluator as the enforcement gate
decides which thresholds are crossed.
"""

from typing import List, Optional, Union
import structlog

from ..core.errors import NotFoundError
from ..core.limits import LimitPolicy, evaluate_limit
from ..core.periods import BillingPeriod
from ..persistence import (
    AggregateRepository,
    AlertRepository,
    AlertType,
    Database,
    PlanLimitRepository,
    UsageAlert,
    new_id,
)
from .aggregation import resolve_period

logger = structlog.get_logger()


class LimitMonitor:
    """Upserts soft/hard limit alerts for (meter, user, period)."""

    def __init__(self, db: Database):
        self.plan_limits = PlanLimitRepository(db)
        self.aggregates = AggregateRepository(db)
        self.alerts = AlertRepository(db)

    def check_limits(
        self,
        meter_id: str,
        user_id: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> List[UsageAlert]:
        """
        Evaluate every plan limit of the meter against the user's usage.

        Returns the alerts raised or refreshed by this check.
        """
        period = resolve_period(billing_period)
        limits = self.plan_limits.list_for_meter(meter_id)
        if not limits:
            return []

        aggregate = self.aggregates.get(meter_id, user_id, period.key)
        usage = aggregate.aggregate_value if aggregate else 0.0

        raised = []
        for limit in limits:
            if not limit.limit_value:
                continue  # unlimited plan

            evaluation = evaluate_limit(usage, limit.limit_value, LimitPolicy.from_plan_limit(limit))

            if evaluation.warn:
                raised.append(self._upsert(
                    meter_id, user_id, limit.plan_name, AlertType.SOFT_LIMIT_REACHED,
                    period.key, evaluation.usage_percentage, usage, limit.limit_value,
                ))
            if evaluation.at_cap:
                raised.append(self._upsert(
                    meter_id, user_id, limit.plan_name, AlertType.HARD_LIMIT_REACHED,
                    period.key, 100.0, usage, limit.limit_value,
                ))

        return raised

    def _upsert(
        self,
        meter_id: str,
        user_id: str,
        plan_name: str,
        alert_type: AlertType,
        billing_period: str,
        threshold_percentage: float,
        usage: float,
        limit_value: float,
    ) -> UsageAlert:
        alert = self.alerts.upsert(UsageAlert(
            id=new_id(),
            meter_id=meter_id,
            user_id=user_id,
            plan_name=plan_name,
            alert_type=alert_type.value,
            billing_period=billing_period,
            threshold_percentage=threshold_percentage,
            current_usage=usage,
            limit_value=limit_value,
        ))
        logger.warning(
            "usage_alert",
            alert_type=alert_type.value,
            meter_id=meter_id,
            user_id=user_id,
            plan_name=plan_name,
            current_usage=usage,
            limit_value=limit_value,
        )
        return alert

    def list_alerts(
        self,
        meter_id: str,
        user_id: str,
        plan_name: Optional[str] = None,
        include_acknowledged: bool = False,
        billing_period: Optional[str] = None,
    ) -> List[UsageAlert]:
        return self.alerts.list_for_user(meter_id, user_id, plan_name, include_acknowledged, billing_period)

    def get_alert(self, alert_id: str) -> UsageAlert:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert not found: {alert_id}")
        return alert

    def acknowledge_alert(self, alert_id: str) -> UsageAlert:
        alert = self.get_alert(alert_id)
        if not alert.acknowledged:
            self.alerts.acknowledge(alert_id)
            alert = self.alerts.get(alert_id)
        return alert
