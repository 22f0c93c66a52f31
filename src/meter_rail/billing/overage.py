"""
Overage Calculator

Computes billable usage beyond a tier's caps at period close:

    overage_amount = max(0, actual_usage - limit)
    overage_cost   = overage_amount * overage_price

Money is computed in Decimal. Rows are upserted by
(customer, creator, tier, meter, period), so a re-run recomputes the
same row instead of adding one, and a billed row is never changed.
"""

from decimal import Decimal
from typing import List, Optional, Tuple, Union
import structlog

from ..core.periods import BillingPeriod
from ..metering.aggregation import resolve_period
from ..persistence import (
    AggregateRepository,
    AssignmentRepository,
    Database,
    MeterRepository,
    OverageRepository,
    PlanLimitRepository,
    SubscriptionTier,
    TierRepository,
    TierUsageOverage,
    new_id,
)

logger = structlog.get_logger()


def to_decimal(value: Union[float, int, str, Decimal, None]) -> Decimal:
    """Decimal from a stored float without binary noise (0.1 -> Decimal('0.1'))."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_overage(
    actual_usage: float,
    limit: Union[float, Decimal],
    overage_price: float,
) -> Tuple[Decimal, Decimal]:
    """Returns (overage_amount, overage_cost)."""
    amount = max(Decimal("0"), to_decimal(actual_usage) - to_decimal(limit))
    return amount, amount * to_decimal(overage_price)


class OverageCalculator:
    """Calculates and stores tier usage overages."""

    def __init__(self, db: Database):
        self.assignments = AssignmentRepository(db)
        self.tiers = TierRepository(db)
        self.meters = MeterRepository(db)
        self.plan_limits = PlanLimitRepository(db)
        self.aggregates = AggregateRepository(db)
        self.overages = OverageRepository(db)

    def calculate_usage_overages(
        self,
        customer_id: str,
        creator_id: str,
        billing_period: Union[str, BillingPeriod],
    ) -> List[TierUsageOverage]:
        """
        Compute and upsert the customer's overages for a period.

        Returns the stored rows; a customer without a current assignment
        has none. Unbilled rows of the current tier that no longer have an
        overage (the cap was raised, say) are removed.
        """
        period = resolve_period(billing_period)
        stored = [self.overages.upsert(o) for o in self._compute(customer_id, creator_id, period)]

        assignment = self.assignments.get_current(customer_id, creator_id)
        if assignment is not None:
            self.overages.delete_stale(
                customer_id, creator_id, assignment.tier_id, period.key, [o.meter_id for o in stored]
            )

        if stored:
            logger.info(
                "overages_calculated",
                customer_id=customer_id,
                creator_id=creator_id,
                billing_period=period.key,
                count=len(stored),
                total_cost=float(sum(to_decimal(o.overage_cost) for o in stored)),
            )
        return stored

    def preview_overages(
        self,
        customer_id: str,
        creator_id: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> List[TierUsageOverage]:
        """Same figures as calculate_usage_overages, nothing written."""
        return self._compute(customer_id, creator_id, resolve_period(billing_period))

    def estimate_overage_cost(
        self,
        customer_id: str,
        creator_id: str,
        billing_period: Union[str, BillingPeriod, None] = None,
    ) -> float:
        previews = self.preview_overages(customer_id, creator_id, billing_period)
        return float(sum((to_decimal(o.overage_cost) for o in previews), Decimal("0")))

    def _compute(
        self,
        customer_id: str,
        creator_id: str,
        period: BillingPeriod,
    ) -> List[TierUsageOverage]:
        assignment = self.assignments.get_current(customer_id, creator_id)
        if assignment is None:
            return []
        tier = self.tiers.get(assignment.tier_id)
        if tier is None:
            logger.warning("overage_tier_missing", customer_id=customer_id, tier_id=assignment.tier_id)
            return []

        results = []
        for metric_name in sorted(tier.usage_caps):
            overage = self._compute_metric(customer_id, creator_id, tier, metric_name, period)
            if overage is not None:
                results.append(overage)
        return results

    def _compute_metric(
        self,
        customer_id: str,
        creator_id: str,
        tier: SubscriptionTier,
        metric_name: str,
        period: BillingPeriod,
    ) -> Optional[TierUsageOverage]:
        limit = tier.usage_cap(metric_name)
        if limit is None:
            return None  # unlimited

        # Deactivated meters still bill the usage they recorded
        meter = self.meters.get_by_event(creator_id, metric_name, active_only=False)
        if meter is None:
            return None

        plan_limit = self.plan_limits.get(meter.id, tier.plan_name)
        if plan_limit is None or not plan_limit.overage_price:
            return None  # nothing billable

        aggregate = self.aggregates.get(meter.id, customer_id, period.key)
        actual_usage = aggregate.aggregate_value if aggregate else 0.0

        # Usage already charged as overage under an earlier tier this period
        prior = sum(
            (to_decimal(o.overage_amount)
             for o in self.overages.list_for_customer(customer_id, creator_id, period.key)
             if o.meter_id == meter.id and o.tier_id != tier.id),
            Decimal("0"),
        )
        amount, cost = compute_overage(actual_usage, to_decimal(limit) + prior, plan_limit.overage_price)
        if amount == 0:
            return None

        return TierUsageOverage(
            id=new_id(),
            customer_id=customer_id,
            creator_id=creator_id,
            tier_id=tier.id,
            meter_id=meter.id,
            billing_period=period.key,
            limit_value=limit,
            actual_usage=actual_usage,
            overage_amount=float(amount),
            overage_price=plan_limit.overage_price,
            overage_cost=float(cost),
            currency=tier.currency,
        )
