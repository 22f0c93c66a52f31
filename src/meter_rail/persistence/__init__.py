"""
Persistence Layer for Meter Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    UsageMeter,
    MeterPlanLimit,
    UsageEvent,
    UsageAggregate,
    SubscriptionTier,
    CustomerTierAssignment,
    TierUsageOverage,
    UsageBillingSync,
    UsageAlert,
    AssignmentStatus,
    BillingModel,
    BillingStatus,
    AlertType,
    CURRENT_STATUSES,
    BILLABLE_STATUSES,
    new_id,
)
from .repository import (
    MeterRepository,
    PlanLimitRepository,
    UsageEventRepository,
    AggregateRepository,
    AlertRepository,
)
from .billing_repository import (
    TierRepository,
    AssignmentRepository,
    OverageRepository,
    BillingSyncRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "UsageMeter",
    "MeterPlanLimit",
    "UsageEvent",
    "UsageAggregate",
    "SubscriptionTier",
    "CustomerTierAssignment",
    "TierUsageOverage",
    "UsageBillingSync",
    "UsageAlert",
    "AssignmentStatus",
    "BillingModel",
    "BillingStatus",
    "AlertType",
    "CURRENT_STATUSES",
    "BILLABLE_STATUSES",
    "new_id",
    "MeterRepository",
    "PlanLimitRepository",
    "UsageEventRepository",
    "AggregateRepository",
    "AlertRepository",
    "TierRepository",
    "AssignmentRepository",
    "OverageRepository",
    "BillingSyncRepository",
]
