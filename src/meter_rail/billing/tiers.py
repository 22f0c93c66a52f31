"""
Subscription Tiers

Creator-defined plans (price, billing cycle, entitlements, usage caps)
and the assignment of customers to them. Exactly one assignment exists
per (customer, creator); it is "current" while its status is active,
trialing or past_due.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import structlog

from ..core.errors import NotFoundError, ValidationError
from ..core.periods import BillingCycle, BillingPeriod, add_cycle, parse_timestamp, to_iso, utc_now
from ..persistence import (
    AggregateRepository,
    AssignmentRepository,
    AssignmentStatus,
    CustomerTierAssignment,
    Database,
    MeterRepository,
    OverageRepository,
    PlanLimitRepository,
    SubscriptionTier,
    TierRepository,
    new_id,
)

logger = structlog.get_logger()


@dataclass
class TierSpec:
    """Input for creating a tier."""
    name: str
    price: float = 0.0
    currency: str = "usd"
    billing_cycle: str = BillingCycle.MONTHLY.value
    description: Optional[str] = None
    feature_entitlements: List[str] = field(default_factory=list)
    usage_caps: Dict[str, float] = field(default_factory=dict)
    trial_period_days: int = 0
    is_default: bool = False
    sort_order: int = 0
    external_product_ref: Optional[str] = None
    external_price_ref: Optional[str] = None


@dataclass
class TierUpgradeOption:
    """A higher-priced tier with its cost and estimated overage savings."""
    tier: SubscriptionTier
    upgrade_cost: float
    upgrade_savings: float
    recommended: bool
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.to_dict(),
            "upgrade_cost": self.upgrade_cost,
            "upgrade_savings": self.upgrade_savings,
            "recommended": self.recommended,
            "reason": self.reason,
        }


# Fields update_tier accepts
_UPDATABLE = (
    "name", "description", "price", "currency", "billing_cycle",
    "feature_entitlements", "usage_caps", "trial_period_days", "is_default",
    "active", "sort_order", "external_product_ref", "external_price_ref",
)
_NULLABLE = ("description", "external_product_ref", "external_price_ref")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_tier(tier: SubscriptionTier) -> None:
    if not isinstance(tier.name, str) or not tier.name.strip():
        raise ValidationError("Tier name is required")
    if not _is_number(tier.price):
        raise ValidationError("Tier price must be a number")
    if tier.price < 0:
        raise ValidationError("Tier price must not be negative")
    if not isinstance(tier.trial_period_days, int) or isinstance(tier.trial_period_days, bool):
        raise ValidationError("trial_period_days must be an integer")
    if tier.trial_period_days < 0:
        raise ValidationError("trial_period_days must not be negative")
    try:
        BillingCycle(tier.billing_cycle)
    except ValueError:
        raise ValidationError(f"Unknown billing cycle: {tier.billing_cycle}")
    if not isinstance(tier.feature_entitlements, list):
        raise ValidationError("feature_entitlements must be a list")
    if not isinstance(tier.usage_caps, dict):
        raise ValidationError("usage_caps must map metric names to numbers")
    for metric, cap in tier.usage_caps.items():
        if not _is_number(cap):
            raise ValidationError(f"Usage cap for {metric} must be a number")


class TierService:
    """Tier CRUD, customer assignments and tier-level usage views."""

    # Upgrade is recommended when savings exceed this share of its cost
    RECOMMEND_SAVINGS_RATIO = 0.5

    def __init__(self, db: Database):
        self.tiers = TierRepository(db)
        self.assignments = AssignmentRepository(db)
        self.meters = MeterRepository(db)
        self.plan_limits = PlanLimitRepository(db)
        self.aggregates = AggregateRepository(db)
        self.overages = OverageRepository(db)

    # Tiers

    def create_tier(self, creator_id: str, spec: TierSpec) -> SubscriptionTier:
        tier = SubscriptionTier(
            id=new_id(),
            creator_id=creator_id,
            name=(spec.name or "").strip(),
            description=spec.description,
            price=spec.price,
            currency=(spec.currency or "usd").lower(),
            billing_cycle=spec.billing_cycle,
            feature_entitlements=list(spec.feature_entitlements),
            usage_caps=dict(spec.usage_caps),
            trial_period_days=spec.trial_period_days,
            is_default=spec.is_default,
            sort_order=spec.sort_order,
            external_product_ref=spec.external_product_ref,
            external_price_ref=spec.external_price_ref,
        )
        _validate_tier(tier)
        tier.price = float(tier.price)
        self.tiers.create(tier)
        if tier.is_default:
            self.tiers.clear_default(creator_id, tier.id)
        return tier

    def update_tier(self, creator_id: str, tier_id: str, changes: Dict[str, Any]) -> SubscriptionTier:
        """Apply a partial update; unknown fields are rejected."""
        unknown = set(changes) - set(_UPDATABLE)
        if unknown:
            raise ValidationError(f"Cannot update tier fields: {', '.join(sorted(unknown))}")
        cleared = sorted(name for name, value in changes.items() if value is None and name not in _NULLABLE)
        if cleared:
            raise ValidationError(f"Tier fields cannot be null: {', '.join(cleared)}")

        tier = self.get_tier(creator_id, tier_id)
        for name, value in changes.items():
            setattr(tier, name, value)
        tier.updated_at = to_iso(utc_now())
        _validate_tier(tier)
        tier.price = float(tier.price)

        self.tiers.update(tier)
        if changes.get("is_default"):
            self.tiers.clear_default(creator_id, tier.id)
        logger.info("tier_updated", tier_id=tier_id, fields=sorted(changes))
        return tier

    def get_tier(self, creator_id: str, tier_id: str) -> SubscriptionTier:
        tier = self.tiers.get(tier_id)
        if tier is None or tier.creator_id != creator_id:
            raise NotFoundError(f"Tier not found: {tier_id}")
        return tier

    def list_tiers(self, creator_id: str, include_inactive: bool = False) -> List[SubscriptionTier]:
        return self.tiers.list_by_creator(creator_id, include_inactive=include_inactive)

    def delete_tier(self, creator_id: str, tier_id: str) -> None:
        """Delete a tier; one with billing history is deactivated instead."""
        self.get_tier(creator_id, tier_id)
        if self.tiers.count_current_assignments(tier_id) > 0:
            raise ValidationError("Cannot delete tier with active customers")
        if self.tiers.has_history(tier_id):
            # past assignments and overages keep pointing at it
            self.update_tier(creator_id, tier_id, {"active": False, "is_default": False})
            return
        self.tiers.delete(tier_id)

    # Assignments

    def assign_customer_to_tier(
        self,
        customer_id: str,
        creator_id: str,
        tier_id: str,
        external_subscription_ref: Optional[str] = None,
        external_customer_ref: Optional[str] = None,
        subscription_item_refs: Optional[Dict[str, str]] = None,
        start: Union[datetime, str, None] = None,
    ) -> CustomerTierAssignment:
        """
        Create or replace the customer's assignment with this creator.

        The period runs one billing cycle from `start` (default now). Tiers
        with trial days start `trialing`. Billing references of an existing
        assignment are kept unless new ones are given.
        """
        if not customer_id:
            raise ValidationError("customer_id is required")
        tier = self.get_tier(creator_id, tier_id)
        if not tier.active:
            raise ValidationError(f"Tier {tier.name} is not active")

        period_start = parse_timestamp(start)
        period_end = add_cycle(period_start, BillingCycle(tier.billing_cycle))

        status = AssignmentStatus.ACTIVE.value
        trial_start = trial_end = None
        if tier.trial_period_days > 0:
            status = AssignmentStatus.TRIALING.value
            trial_start = to_iso(period_start)
            trial_end = to_iso(period_start + timedelta(days=tier.trial_period_days))

        existing = self.assignments.get(customer_id, creator_id)
        assignment = CustomerTierAssignment(
            id=existing.id if existing else new_id(),
            customer_id=customer_id,
            creator_id=creator_id,
            tier_id=tier.id,
            status=status,
            current_period_start=to_iso(period_start),
            current_period_end=to_iso(period_end),
            trial_start=trial_start,
            trial_end=trial_end,
            external_subscription_ref=external_subscription_ref
            or (existing.external_subscription_ref if existing else None),
            external_customer_ref=external_customer_ref
            or (existing.external_customer_ref if existing else None),
            subscription_item_refs=subscription_item_refs
            if subscription_item_refs is not None
            else (existing.subscription_item_refs if existing else {}),
        )
        return self.assignments.upsert(assignment)

    def get_current_assignment(self, customer_id: str, creator_id: str) -> Optional[CustomerTierAssignment]:
        return self.assignments.get_current(customer_id, creator_id)

    def _require_assignment(self, customer_id: str, creator_id: str) -> CustomerTierAssignment:
        assignment = self.assignments.get(customer_id, creator_id)
        if assignment is None:
            raise NotFoundError(f"No tier assignment for customer {customer_id}")
        return assignment

    def advance_billing_period(self, customer_id: str, creator_id: str) -> CustomerTierAssignment:
        """
        Roll the assignment into its next period.

        Ends a pending cancellation and turns an expired trial active.
        """
        assignment = self._require_assignment(customer_id, creator_id)
        if not assignment.is_current:
            raise ValidationError(f"Assignment is {assignment.status}")
        tier = self.tiers.get(assignment.tier_id)
        cycle = BillingCycle(tier.billing_cycle) if tier else BillingCycle.MONTHLY

        new_start = parse_timestamp(assignment.current_period_end)
        assignment.current_period_start = to_iso(new_start)
        assignment.current_period_end = to_iso(add_cycle(new_start, cycle))

        if assignment.cancel_at_period_end:
            assignment.status = AssignmentStatus.CANCELED.value
        elif (
            assignment.status == AssignmentStatus.TRIALING.value
            and assignment.trial_end
            and parse_timestamp(assignment.trial_end) <= new_start
        ):
            assignment.status = AssignmentStatus.ACTIVE.value

        assignment.updated_at = to_iso(utc_now())
        return self.assignments.upsert(assignment)

    def cancel_assignment(self, customer_id: str, creator_id: str, at_period_end: bool = True) -> CustomerTierAssignment:
        assignment = self._require_assignment(customer_id, creator_id)
        if at_period_end:
            assignment.cancel_at_period_end = True
        else:
            assignment.status = AssignmentStatus.CANCELED.value
        assignment.updated_at = to_iso(utc_now())
        return self.assignments.upsert(assignment)

    def set_assignment_status(self, customer_id: str, creator_id: str, status: str) -> CustomerTierAssignment:
        try:
            status = AssignmentStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown assignment status: {status}")
        assignment = self._require_assignment(customer_id, creator_id)
        assignment.status = status
        assignment.updated_at = to_iso(utc_now())
        return self.assignments.upsert(assignment)

    def list_assignments(self, creator_id: str, statuses: Optional[List[str]] = None) -> List[CustomerTierAssignment]:
        return self.assignments.list_by_creator(creator_id, statuses)

    # Views

    def _usage_summary(self, customer_id: str, creator_id: str, tier: SubscriptionTier, period: BillingPeriod) -> Dict[str, Dict[str, Any]]:
        summary = {}
        for metric_name in sorted(tier.usage_caps):
            meter = self.meters.get_by_event(creator_id, metric_name, active_only=False)
            if meter is None:
                continue
            limit = tier.usage_cap(metric_name)
            aggregate = self.aggregates.get(meter.id, customer_id, period.key)
            usage = aggregate.aggregate_value if aggregate else 0.0
            summary[metric_name] = {
                "meter_id": meter.id,
                "current_usage": usage,
                "limit_value": limit,
                "usage_percentage": usage / limit * 100 if limit else 0.0,
                "overage_amount": max(0.0, usage - limit) if limit else 0.0,
            }
        return summary

    def get_customer_tier_info(self, customer_id: str, creator_id: str) -> Optional[Dict[str, Any]]:
        """Tier, assignment, per-metric usage, overages and next billing date."""
        assignment = self.assignments.get_current(customer_id, creator_id)
        if assignment is None:
            return None
        tier = self.tiers.get(assignment.tier_id)
        if tier is None:
            return None

        period = BillingPeriod.for_instant(tier.billing_cycle)
        overages = [
            o for o in self.overages.list_for_customer(customer_id, creator_id, period.key)
            if o.overage_amount > 0
        ]

        return {
            "tier": tier.to_dict(),
            "assignment": assignment.to_dict(),
            "billing_period": period.key,
            "usage_summary": self._usage_summary(customer_id, creator_id, tier, period),
            "overages": [o.to_dict() for o in overages],
            "next_billing_date": assignment.current_period_end,
        }

    def get_tier_upgrade_options(self, customer_id: str, creator_id: str) -> List[TierUpgradeOption]:
        """
        Higher-priced active tiers, recommended ones first, then by price.

        Savings are the overage charges the customer's current-period usage
        would no longer incur, priced with the current plan's overage prices.
        """
        assignment = self.assignments.get_current(customer_id, creator_id)
        if assignment is None:
            return []
        current = self.tiers.get(assignment.tier_id)
        if current is None:
            return []

        period = BillingPeriod.for_instant(current.billing_cycle)
        usage = self._usage_summary(customer_id, creator_id, current, period)

        options = []
        for tier in self.tiers.list_by_creator(creator_id):
            if tier.id == current.id or tier.price <= current.price:
                continue

            savings = 0.0
            for metric_name, metric in usage.items():
                if metric["overage_amount"] <= 0:
                    continue
                plan_limit = self.plan_limits.get(metric["meter_id"], current.plan_name)
                price = plan_limit.overage_price if plan_limit and plan_limit.overage_price else 0.0
                new_limit = tier.usage_cap(metric_name)
                would_overage = 0.0 if new_limit is None else max(0.0, metric["current_usage"] - new_limit)
                savings += (metric["overage_amount"] - would_overage) * price

            upgrade_cost = tier.price - current.price
            recommended = savings > upgrade_cost * self.RECOMMEND_SAVINGS_RATIO
            options.append(TierUpgradeOption(
                tier=tier,
                upgrade_cost=upgrade_cost,
                upgrade_savings=savings,
                recommended=recommended,
                reason=f"Save approximately {savings:.2f} {tier.currency.upper()} on overage charges" if recommended else "",
            ))

        options.sort(key=lambda o: (not o.recommended, o.tier.price))
        return options
