"""
Meter Registry

Defines billable event types per creator and the per-plan limits that
govern them. A meter and its initial plan limits are written in one
transaction; meters are never hard-deleted, only deactivated.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import structlog

from ..core.aggregation import AggregationType
from ..core.errors import NotFoundError, ValidationError
from ..core.limits import DEFAULT_SOFT_LIMIT_THRESHOLD
from ..persistence import (
    Database,
    BillingModel,
    MeterPlanLimit,
    MeterRepository,
    PlanLimitRepository,
    UsageMeter,
    new_id,
)

logger = structlog.get_logger()


@dataclass
class PlanLimitSpec:
    """Limit of a meter on one plan."""
    plan_name: str
    limit_value: Optional[float] = None
    overage_price: Optional[float] = None
    soft_limit_threshold: float = DEFAULT_SOFT_LIMIT_THRESHOLD
    hard_cap: bool = False


@dataclass
class MeterSpec:
    """Input for creating a meter."""
    event_name: str
    display_name: str
    aggregation_type: str = AggregationType.COUNT.value
    description: Optional[str] = None
    unit_name: str = "units"
    billing_model: str = BillingModel.METERED.value
    unique_property: Optional[str] = None
    plan_limits: List[PlanLimitSpec] = field(default_factory=list)


def _validate_plan_limit(limit: PlanLimitSpec) -> None:
    if not limit.plan_name or not limit.plan_name.strip():
        raise ValidationError("plan_name is required")
    if limit.limit_value is not None and limit.limit_value < 0:
        raise ValidationError(f"limit_value for plan {limit.plan_name!r} must not be negative")
    if limit.overage_price is not None and limit.overage_price < 0:
        raise ValidationError(f"overage_price for plan {limit.plan_name!r} must not be negative")
    if not 0 <= limit.soft_limit_threshold <= 1:
        raise ValidationError(f"soft_limit_threshold for plan {limit.plan_name!r} must be between 0 and 1")


def _to_plan_limit(meter_id: str, limit: PlanLimitSpec) -> MeterPlanLimit:
    return MeterPlanLimit(
        id=new_id(),
        meter_id=meter_id,
        plan_name=limit.plan_name.strip().lower(),
        limit_value=limit.limit_value,
        overage_price=limit.overage_price,
        soft_limit_threshold=limit.soft_limit_threshold,
        hard_cap=limit.hard_cap,
    )


class MeterRegistry:
    """Creates and looks up usage meters and their plan limits."""

    def __init__(self, db: Database):
        self.db = db
        self.meters = MeterRepository(db)
        self.plan_limits = PlanLimitRepository(db)

    def create_meter(self, creator_id: str, spec: MeterSpec) -> UsageMeter:
        """
        Create a meter plus its plan limits atomically.

        Raises ValidationError on malformed input or when the creator
        already has a meter with this event name.
        """
        if not creator_id:
            raise ValidationError("creator_id is required")
        event_name = (spec.event_name or "").strip()
        if not event_name:
            raise ValidationError("event_name is required")
        if not (spec.display_name or "").strip():
            raise ValidationError("display_name is required")
        try:
            aggregation_type = AggregationType(spec.aggregation_type).value
        except ValueError:
            raise ValidationError(f"Unknown aggregation type: {spec.aggregation_type}")
        try:
            billing_model = BillingModel(spec.billing_model).value
        except ValueError:
            raise ValidationError(f"Unknown billing model: {spec.billing_model}")
        for limit in spec.plan_limits:
            _validate_plan_limit(limit)

        if self.meters.get_by_event(creator_id, event_name, active_only=False):
            raise ValidationError(f"Meter with event name '{event_name}' already exists")

        meter = UsageMeter(
            id=new_id(),
            creator_id=creator_id,
            event_name=event_name,
            display_name=spec.display_name.strip(),
            description=spec.description,
            aggregation_type=aggregation_type,
            unit_name=spec.unit_name or "units",
            billing_model=billing_model,
            unique_property=spec.unique_property,
        )

        try:
            with self.db.transaction() as tx:
                self.meters.create(meter, executor=tx)
                for limit in spec.plan_limits:
                    self.plan_limits.upsert(_to_plan_limit(meter.id, limit), executor=tx)
        except Exception as e:
            # lost a race with a concurrent create of the same event name
            if Database.is_unique_violation(e):
                raise ValidationError(f"Meter with event name '{event_name}' already exists")
            raise

        logger.info(
            "meter_registered",
            meter_id=meter.id,
            creator_id=creator_id,
            event_name=event_name,
            plan_limits=len(spec.plan_limits),
        )
        return meter

    def list_meters(self, creator_id: str) -> List[UsageMeter]:
        """Active meters of a creator, newest first."""
        return self.meters.list_by_creator(creator_id)

    def get_meter(self, meter_id: str) -> UsageMeter:
        meter = self.meters.get(meter_id)
        if meter is None:
            raise NotFoundError(f"Meter not found: {meter_id}")
        return meter

    def get_meter_by_event(self, creator_id: str, event_name: str, active_only: bool = True) -> Optional[UsageMeter]:
        return self.meters.get_by_event(creator_id, event_name, active_only=active_only)

    def deactivate_meter(self, creator_id: str, meter_id: str) -> UsageMeter:
        """Soft-delete a meter. Its events and aggregates are kept."""
        meter = self.meters.get(meter_id)
        if meter is None or meter.creator_id != creator_id:
            raise NotFoundError(f"Meter not found: {meter_id}")
        self.meters.set_active(meter_id, False)
        meter.active = False
        return meter

    def get_plan_limits(self, meter_id: str) -> List[MeterPlanLimit]:
        return self.plan_limits.list_for_meter(meter_id)

    def get_plan_limit(self, meter_id: str, plan_name: str) -> Optional[MeterPlanLimit]:
        return self.plan_limits.get(meter_id, plan_name)

    def set_plan_limit(self, meter_id: str, limit: PlanLimitSpec) -> MeterPlanLimit:
        """Create or replace the limit of a meter on one plan."""
        self.get_meter(meter_id)
        _validate_plan_limit(limit)
        self.plan_limits.upsert(_to_plan_limit(meter_id, limit))
        stored = self.plan_limits.get(meter_id, limit.plan_name.strip())
        logger.info("plan_limit_set", meter_id=meter_id, plan_name=stored.plan_name, limit_value=stored.limit_value)
        return stored
