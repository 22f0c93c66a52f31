"""
METER RAIL - Billing Module

Tiers and assignments, overage calculation, and reconciliation with the
billing provider (Stripe) under a bounded retry policy.
"""

from .tiers import TierService, TierSpec, TierUpgradeOption
from .overage import OverageCalculator, compute_overage
from .provider import (
    BillingProvider,
    StripeBillingProvider,
    UsageReport,
    InvoiceLineItem,
    SubscriptionChange,
    call_with_timeout,
)
from .sync import BillingSyncService, BillingCycleResult, MAX_SYNC_ATTEMPTS, to_minor_units

__all__ = [
    "TierService",
    "TierSpec",
    "TierUpgradeOption",
    "OverageCalculator",
    "compute_overage",
    "BillingProvider",
    "StripeBillingProvider",
    "UsageReport",
    "InvoiceLineItem",
    "SubscriptionChange",
    "call_with_timeout",
    "BillingSyncService",
    "BillingCycleResult",
    "MAX_SYNC_ATTEMPTS",
    "to_minor_units",
]
