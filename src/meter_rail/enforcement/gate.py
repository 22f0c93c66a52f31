"""
Tier Enforcement Gate

Decides, before a usage event is written, whether the customer's tier
allows it. The check only reads: it is safe to call speculatively and
repeatedly.

Flow:
1. Resolve the customer's current tier assignment (none: unmetered, allow)
2. Look up the tier's cap for the metric (absent or <= 0: unlimited, allow)
3. Read the aggregate for the billing period containing the event
4. Project usage with the requested increment
5. Evaluate the plan limit's policy (hard cap blocks, threshold warns)
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
import threading
import time
import structlog

from ..core.limits import LimitPolicy, evaluate_limit
from ..core.periods import BillingPeriod
from ..persistence import (
    AggregateRepository,
    AssignmentRepository,
    Database,
    MeterRepository,
    PlanLimitRepository,
    TierRepository,
)

logger = structlog.get_logger()


class GateDecision(Enum):
    """Gate decision outcomes."""
    ALLOW = "ALLOW"
    WARN = "WARN"  # Allowed, soft limit crossed
    BLOCK = "BLOCK"  # Hard cap would be exceeded


@dataclass
class EnforcementResult:
    """Result of an enforcement check."""
    decision: GateDecision
    reason: Optional[str] = None
    current_usage: float = 0.0
    limit_value: Optional[float] = None
    usage_percentage: Optional[float] = None
    billing_period: Optional[str] = None
    plan_name: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.decision != GateDecision.BLOCK

    @property
    def should_warn(self) -> bool:
        return self.decision == GateDecision.WARN

    @property
    def should_block(self) -> bool:
        return self.decision == GateDecision.BLOCK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "decision": self.decision.value,
            "reason": self.reason,
            "current_usage": self.current_usage,
            "limit_value": self.limit_value,
            "usage_percentage": self.usage_percentage,
            "should_warn": self.should_warn,
            "should_block": self.should_block,
            "billing_period": self.billing_period,
            "plan_name": self.plan_name,
        }


@dataclass
class EnforcementConfig:
    """Configuration for the enforcement gate."""
    fail_closed: bool = True  # Lookup errors reject the event instead of allowing it


class EnforcementEngine:
    """Synchronous tier limit check on the ingest path."""

    def __init__(self, db: Database, config: Optional[EnforcementConfig] = None):
        self.config = config or EnforcementConfig()
        self.assignments = AssignmentRepository(db)
        self.tiers = TierRepository(db)
        self.meters = MeterRepository(db)
        self.plan_limits = PlanLimitRepository(db)
        self.aggregates = AggregateRepository(db)

        # Metrics
        self._lock = threading.Lock()
        self._total_checks = 0
        self._warned_count = 0
        self._blocked_count = 0
        self._error_count = 0

    def check_enforcement(
        self,
        customer_id: str,
        creator_id: str,
        metric_name: str,
        requested_increment: float = 1,
        at: Union[datetime, str, None] = None,
    ) -> EnforcementResult:
        """
        Check whether `requested_increment` more units of `metric_name` are allowed.

        Args:
            customer_id: Customer (the metered user)
            creator_id: Creator owning the tier and meter
            metric_name: Meter event name, key of the tier's usage caps
            requested_increment: Prospective usage to add
            at: Event time; selects the billing period (default now)

        Returns:
            EnforcementResult with decision ALLOW, WARN or BLOCK
        """
        start_time = time.perf_counter()
        self._count("_total_checks")

        try:
            result = self._evaluate(customer_id, creator_id, metric_name, requested_increment, at)
        except Exception as e:
            self._count("_error_count")
            logger.error(
                "enforcement_error",
                customer_id=customer_id,
                creator_id=creator_id,
                metric=metric_name,
                error=str(e),
                fail_closed=self.config.fail_closed,
            )
            if self.config.fail_closed:
                raise
            return EnforcementResult(
                decision=GateDecision.ALLOW,
                reason=f"Enforcement unavailable (fail-open): {e}",
                latency_ms=(time.perf_counter() - start_time) * 1000,
            )

        result.latency_ms = (time.perf_counter() - start_time) * 1000
        if result.decision == GateDecision.BLOCK:
            self._count("_blocked_count")
            logger.info(
                "enforcement_blocked",
                customer_id=customer_id,
                metric=metric_name,
                current_usage=result.current_usage,
                limit_value=result.limit_value,
                billing_period=result.billing_period,
            )
        elif result.decision == GateDecision.WARN:
            self._count("_warned_count")
            logger.warning(
                "soft_limit_crossed",
                customer_id=customer_id,
                metric=metric_name,
                usage_percentage=result.usage_percentage,
                billing_period=result.billing_period,
            )
        return result

    def _evaluate(
        self,
        customer_id: str,
        creator_id: str,
        metric_name: str,
        requested_increment: float,
        at: Union[datetime, str, None],
    ) -> EnforcementResult:
        assignment = self.assignments.get_current(customer_id, creator_id)
        if assignment is None:
            return EnforcementResult(decision=GateDecision.ALLOW)

        tier = self.tiers.get(assignment.tier_id)
        if tier is None:
            raise LookupError(f"Tier {assignment.tier_id} of assignment {assignment.id} is missing")

        period = BillingPeriod.for_instant(tier.billing_cycle, at)
        limit = tier.usage_cap(metric_name)
        if limit is None:
            return EnforcementResult(
                decision=GateDecision.ALLOW,
                billing_period=period.key,
                plan_name=tier.name,
            )

        meter = self.meters.get_by_event(creator_id, metric_name)
        if meter is None:
            return EnforcementResult(
                decision=GateDecision.ALLOW,
                limit_value=limit,
                billing_period=period.key,
                plan_name=tier.name,
            )

        aggregate = self.aggregates.get(meter.id, customer_id, period.key)
        current_usage = aggregate.aggregate_value if aggregate else 0.0
        projected = current_usage + requested_increment

        plan_limit = self.plan_limits.get(meter.id, tier.plan_name)
        evaluation = evaluate_limit(projected, limit, LimitPolicy.from_plan_limit(plan_limit))

        if evaluation.block:
            return EnforcementResult(
                decision=GateDecision.BLOCK,
                reason=(
                    f"Usage limit exceeded. Your {tier.name} plan allows "
                    f"{limit:g} {metric_name} per billing cycle."
                ),
                current_usage=current_usage,
                limit_value=limit,
                usage_percentage=evaluation.usage_percentage,
                billing_period=period.key,
                plan_name=tier.name,
            )

        return EnforcementResult(
            decision=GateDecision.WARN if evaluation.warn else GateDecision.ALLOW,
            current_usage=current_usage,
            limit_value=limit,
            usage_percentage=evaluation.usage_percentage,
            billing_period=period.key,
            plan_name=tier.name,
        )

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def get_metrics(self) -> Dict[str, Any]:
        """Get enforcement metrics."""
        return {
            "total_checks": self._total_checks,
            "warned": self._warned_count,
            "blocked": self._blocked_count,
            "errors": self._error_count,
            "block_rate": self._blocked_count / self._total_checks if self._total_checks > 0 else 0,
        }
