"""
Data Models for Persistence Layer

One dataclass per table. `to_db_tuple()` follows the column order of the
table, `from_row()` accepts both SQLite rows (JSON stored as text, booleans
as 0/1) and psycopg2 rows (JSONB decoded, native booleans).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import uuid


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _text(value: Any) -> Optional[str]:
    # psycopg2 may hand back datetimes for columns cast by hand
    if isinstance(value, datetime):
        return value.isoformat(timespec="microseconds")
    return value


def _float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


class BillingModel(Enum):
    METERED = "metered"
    LICENSED = "licensed"


class AssignmentStatus(Enum):
    """Customer tier assignment states."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses that make an assignment the customer's "current" one
CURRENT_STATUSES = (
    AssignmentStatus.ACTIVE.value,
    AssignmentStatus.TRIALING.value,
    AssignmentStatus.PAST_DUE.value,
)

# Statuses billed at period close
BILLABLE_STATUSES = (
    AssignmentStatus.ACTIVE.value,
    AssignmentStatus.TRIALING.value,
)


class BillingStatus(Enum):
    """UsageBillingSync.billing_status: pending -> synced | failed."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class AlertType(Enum):
    SOFT_LIMIT_REACHED = "soft_limit_reached"
    HARD_LIMIT_REACHED = "hard_limit_reached"


@dataclass
class UsageMeter:
    """A billable event type tracked per creator."""
    id: str
    creator_id: str
    event_name: str
    display_name: str
    aggregation_type: str
    description: Optional[str] = None
    unit_name: str = "units"
    billing_model: str = BillingModel.METERED.value
    unique_property: Optional[str] = None
    active: bool = True
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "event_name": self.event_name,
            "display_name": self.display_name,
            "description": self.description,
            "aggregation_type": self.aggregation_type,
            "unit_name": self.unit_name,
            "billing_model": self.billing_model,
            "unique_property": self.unique_property,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.creator_id,
            self.event_name,
            self.display_name,
            self.description,
            self.aggregation_type,
            self.unit_name,
            self.billing_model,
            self.unique_property,
            self.active,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageMeter":
        return cls(
            id=row["id"],
            creator_id=row["creator_id"],
            event_name=row["event_name"],
            display_name=row["display_name"],
            description=row.get("description"),
            aggregation_type=row["aggregation_type"],
            unit_name=row.get("unit_name") or "units",
            billing_model=row.get("billing_model") or BillingModel.METERED.value,
            unique_property=row.get("unique_property"),
            active=bool(row.get("active", 1)),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class MeterPlanLimit:
    """Per-plan enforcement policy for a meter."""
    id: str
    meter_id: str
    plan_name: str
    limit_value: Optional[float] = None
    overage_price: Optional[float] = None
    soft_limit_threshold: float = 0.8
    hard_cap: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meter_id": self.meter_id,
            "plan_name": self.plan_name,
            "limit_value": self.limit_value,
            "overage_price": self.overage_price,
            "soft_limit_threshold": self.soft_limit_threshold,
            "hard_cap": self.hard_cap,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.meter_id,
            self.plan_name,
            self.limit_value,
            self.overage_price,
            self.soft_limit_threshold,
            self.hard_cap,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MeterPlanLimit":
        threshold = row.get("soft_limit_threshold")
        return cls(
            id=row["id"],
            meter_id=row["meter_id"],
            plan_name=row["plan_name"],
            limit_value=_float(row.get("limit_value")),
            overage_price=_float(row.get("overage_price")),
            soft_limit_threshold=0.8 if threshold is None else float(threshold),
            hard_cap=bool(row.get("hard_cap", 0)),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class UsageEvent:
    """An immutable usage event."""
    id: str
    meter_id: str
    user_id: str
    event_value: float = 1.0
    properties: Dict[str, Any] = field(default_factory=dict)
    event_timestamp: str = field(default_factory=_now)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meter_id": self.meter_id,
            "user_id": self.user_id,
            "event_value": self.event_value,
            "properties": self.properties,
            "event_timestamp": self.event_timestamp,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.meter_id,
            self.user_id,
            self.event_value,
            json.dumps(self.properties, sort_keys=True, default=str),
            self.event_timestamp,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageEvent":
        return cls(
            id=row["id"],
            meter_id=row["meter_id"],
            user_id=row["user_id"],
            event_value=float(row["event_value"]),
            properties=_load_json(row.get("properties"), {}),
            event_timestamp=_text(row["event_timestamp"]),
            created_at=_text(row["created_at"]),
        )


@dataclass
class UsageAggregate:
    """Rollup of one (meter, user, billing period)."""
    id: str
    meter_id: str
    user_id: str
    billing_period: str
    period_start: str
    period_end: str
    aggregate_value: float = 0.0
    event_count: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meter_id": self.meter_id,
            "user_id": self.user_id,
            "billing_period": self.billing_period,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "aggregate_value": self.aggregate_value,
            "event_count": self.event_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.meter_id,
            self.user_id,
            self.billing_period,
            self.period_start,
            self.period_end,
            self.aggregate_value,
            self.event_count,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageAggregate":
        return cls(
            id=row["id"],
            meter_id=row["meter_id"],
            user_id=row["user_id"],
            billing_period=row["billing_period"],
            period_start=_text(row["period_start"]),
            period_end=_text(row["period_end"]),
            aggregate_value=float(row.get("aggregate_value") or 0),
            event_count=int(row.get("event_count") or 0),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class SubscriptionTier:
    """A creator's subscription plan."""
    id: str
    creator_id: str
    name: str
    price: float = 0.0
    currency: str = "usd"
    billing_cycle: str = "monthly"
    feature_entitlements: List[str] = field(default_factory=list)
    usage_caps: Dict[str, float] = field(default_factory=dict)
    trial_period_days: int = 0
    is_default: bool = False
    active: bool = True
    sort_order: int = 0
    description: Optional[str] = None
    external_product_ref: Optional[str] = None
    external_price_ref: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def plan_name(self) -> str:
        """Name MeterPlanLimit rows use for this tier."""
        return self.name.lower()

    def usage_cap(self, metric_name: str) -> Optional[float]:
        """Cap for a metric; None when the metric is unlimited."""
        value = self.usage_caps.get(metric_name)
        if value is None:
            return None
        value = float(value)
        return value if value > 0 else None

    def has_feature(self, feature: str) -> bool:
        """True for an entitlement "name" or "name:N"."""
        for entitlement in self.feature_entitlements:
            if entitlement == feature or entitlement.split(":", 1)[0] == feature:
                return True
        return False

    def feature_quantity(self, feature: str) -> Optional[int]:
        """Quantity of a "name:N" entitlement, None when absent or unquantified."""
        for entitlement in self.feature_entitlements:
            name, _, quantity = entitlement.partition(":")
            if name == feature and quantity:
                try:
                    return int(quantity)
                except ValueError:
                    return None
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "billing_cycle": self.billing_cycle,
            "feature_entitlements": self.feature_entitlements,
            "usage_caps": self.usage_caps,
            "trial_period_days": self.trial_period_days,
            "is_default": self.is_default,
            "active": self.active,
            "sort_order": self.sort_order,
            "external_product_ref": self.external_product_ref,
            "external_price_ref": self.external_price_ref,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.creator_id,
            self.name,
            self.description,
            self.price,
            self.currency,
            self.billing_cycle,
            json.dumps(self.feature_entitlements),
            json.dumps(self.usage_caps, sort_keys=True),
            self.trial_period_days,
            self.is_default,
            self.active,
            self.sort_order,
            self.external_product_ref,
            self.external_price_ref,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionTier":
        caps = _load_json(row.get("usage_caps"), {})
        return cls(
            id=row["id"],
            creator_id=row["creator_id"],
            name=row["name"],
            description=row.get("description"),
            price=float(row.get("price") or 0),
            currency=row.get("currency") or "usd",
            billing_cycle=row.get("billing_cycle") or "monthly",
            feature_entitlements=_load_json(row.get("feature_entitlements"), []),
            usage_caps={k: float(v) for k, v in caps.items() if v is not None},
            trial_period_days=int(row.get("trial_period_days") or 0),
            is_default=bool(row.get("is_default", 0)),
            active=bool(row.get("active", 1)),
            sort_order=int(row.get("sort_order") or 0),
            external_product_ref=row.get("external_product_ref"),
            external_price_ref=row.get("external_price_ref"),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class CustomerTierAssignment:
    """Binding of a customer to a creator's tier."""
    id: str
    customer_id: str
    creator_id: str
    tier_id: str
    status: str
    current_period_start: str
    current_period_end: str
    trial_start: Optional[str] = None
    trial_end: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    subscription_item_refs: Dict[str, str] = field(default_factory=dict)
    cancel_at_period_end: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def is_current(self) -> bool:
        return self.status in CURRENT_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "creator_id": self.creator_id,
            "tier_id": self.tier_id,
            "status": self.status,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "trial_start": self.trial_start,
            "trial_end": self.trial_end,
            "external_subscription_ref": self.external_subscription_ref,
            "external_customer_ref": self.external_customer_ref,
            "subscription_item_refs": self.subscription_item_refs,
            "cancel_at_period_end": self.cancel_at_period_end,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.customer_id,
            self.creator_id,
            self.tier_id,
            self.status,
            self.current_period_start,
            self.current_period_end,
            self.trial_start,
            self.trial_end,
            self.external_subscription_ref,
            self.external_customer_ref,
            json.dumps(self.subscription_item_refs, sort_keys=True),
            self.cancel_at_period_end,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CustomerTierAssignment":
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            creator_id=row["creator_id"],
            tier_id=row["tier_id"],
            status=row["status"],
            current_period_start=_text(row["current_period_start"]),
            current_period_end=_text(row["current_period_end"]),
            trial_start=_text(row.get("trial_start")),
            trial_end=_text(row.get("trial_end")),
            external_subscription_ref=row.get("external_subscription_ref"),
            external_customer_ref=row.get("external_customer_ref"),
            subscription_item_refs=_load_json(row.get("subscription_item_refs"), {}),
            cancel_at_period_end=bool(row.get("cancel_at_period_end", 0)),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class TierUsageOverage:
    """Billable excess usage for one period."""
    id: str
    customer_id: str
    creator_id: str
    tier_id: str
    meter_id: str
    billing_period: str
    limit_value: float
    actual_usage: float
    overage_amount: float
    overage_price: float
    overage_cost: float
    currency: str = "usd"
    billed: bool = False
    billed_at: Optional[str] = None
    external_invoice_item_ref: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "creator_id": self.creator_id,
            "tier_id": self.tier_id,
            "meter_id": self.meter_id,
            "billing_period": self.billing_period,
            "limit_value": self.limit_value,
            "actual_usage": self.actual_usage,
            "overage_amount": self.overage_amount,
            "overage_price": self.overage_price,
            "overage_cost": self.overage_cost,
            "currency": self.currency,
            "billed": self.billed,
            "billed_at": self.billed_at,
            "external_invoice_item_ref": self.external_invoice_item_ref,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.customer_id,
            self.creator_id,
            self.tier_id,
            self.meter_id,
            self.billing_period,
            self.limit_value,
            self.actual_usage,
            self.overage_amount,
            self.overage_price,
            self.overage_cost,
            self.currency,
            self.billed,
            self.billed_at,
            self.external_invoice_item_ref,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TierUsageOverage":
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            creator_id=row["creator_id"],
            tier_id=row["tier_id"],
            meter_id=row["meter_id"],
            billing_period=row["billing_period"],
            limit_value=float(row["limit_value"]),
            actual_usage=float(row["actual_usage"]),
            overage_amount=float(row["overage_amount"]),
            overage_price=float(row["overage_price"]),
            overage_cost=float(row["overage_cost"]),
            currency=row.get("currency") or "usd",
            billed=bool(row.get("billed", 0)),
            billed_at=_text(row.get("billed_at")),
            external_invoice_item_ref=row.get("external_invoice_item_ref"),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class UsageBillingSync:
    """Delivery state of one period total to the billing provider."""
    id: str
    meter_id: str
    user_id: str
    billing_period: str
    usage_quantity: float = 0.0
    external_usage_record_ref: Optional[str] = None
    external_subscription_item_ref: Optional[str] = None
    billing_status: str = BillingStatus.PENDING.value
    sync_attempts: int = 0
    last_sync_attempt: Optional[str] = None
    sync_error: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meter_id": self.meter_id,
            "user_id": self.user_id,
            "billing_period": self.billing_period,
            "usage_quantity": self.usage_quantity,
            "external_usage_record_ref": self.external_usage_record_ref,
            "external_subscription_item_ref": self.external_subscription_item_ref,
            "billing_status": self.billing_status,
            "sync_attempts": self.sync_attempts,
            "last_sync_attempt": self.last_sync_attempt,
            "sync_error": self.sync_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.meter_id,
            self.user_id,
            self.billing_period,
            self.usage_quantity,
            self.external_usage_record_ref,
            self.external_subscription_item_ref,
            self.billing_status,
            self.sync_attempts,
            self.last_sync_attempt,
            self.sync_error,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageBillingSync":
        return cls(
            id=row["id"],
            meter_id=row["meter_id"],
            user_id=row["user_id"],
            billing_period=row["billing_period"],
            usage_quantity=float(row.get("usage_quantity") or 0),
            external_usage_record_ref=row.get("external_usage_record_ref"),
            external_subscription_item_ref=row.get("external_subscription_item_ref"),
            billing_status=row.get("billing_status") or BillingStatus.PENDING.value,
            sync_attempts=int(row.get("sync_attempts") or 0),
            last_sync_attempt=_text(row.get("last_sync_attempt")),
            sync_error=row.get("sync_error"),
            created_at=_text(row["created_at"]),
            updated_at=_text(row["updated_at"]),
        )


@dataclass
class UsageAlert:
    """Soft/hard limit notification."""
    id: str
    meter_id: str
    user_id: str
    plan_name: str
    alert_type: str
    billing_period: str
    threshold_percentage: float
    current_usage: float
    limit_value: Optional[float] = None
    triggered_at: str = field(default_factory=_now)
    acknowledged: bool = False
    acknowledged_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meter_id": self.meter_id,
            "user_id": self.user_id,
            "plan_name": self.plan_name,
            "alert_type": self.alert_type,
            "billing_period": self.billing_period,
            "threshold_percentage": self.threshold_percentage,
            "current_usage": self.current_usage,
            "limit_value": self.limit_value,
            "triggered_at": self.triggered_at,
            "acknowledged": self.acknowledged,
            "acknowledged_at": self.acknowledged_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.meter_id,
            self.user_id,
            self.plan_name,
            self.alert_type,
            self.billing_period,
            self.threshold_percentage,
            self.current_usage,
            self.limit_value,
            self.triggered_at,
            self.acknowledged,
            self.acknowledged_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageAlert":
        return cls(
            id=row["id"],
            meter_id=row["meter_id"],
            user_id=row["user_id"],
            plan_name=row["plan_name"],
            alert_type=row["alert_type"],
            billing_period=row["billing_period"],
            threshold_percentage=float(row["threshold_percentage"]),
            current_usage=float(row["current_usage"]),
            limit_value=_float(row.get("limit_value")),
            triggered_at=_text(row["triggered_at"]),
            acknowledged=bool(row.get("acknowledged", 0)),
            acknowledged_at=_text(row.get("acknowledged_at")),
        )
