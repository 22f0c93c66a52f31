"""
Repository Layer for Tiers and Billing

Tiers, customer assignments, overages and billing-sync records.
"""

from typing import Any, Iterable, List, Optional, Tuple
from datetime import datetime, timezone
import structlog

from .database import Database, get_database
from .models import (
    SubscriptionTier,
    CustomerTierAssignment,
    TierUsageOverage,
    UsageBillingSync,
    BillingStatus,
    CURRENT_STATUSES,
)

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join(["?" for _ in values])


class TierRepository:
    """Repository for subscription tiers."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, tier: SubscriptionTier) -> SubscriptionTier:
        self.db.execute(
            """INSERT INTO subscription_tiers
               (id, creator_id, name, description, price, currency, billing_cycle,
                feature_entitlements, usage_caps, trial_period_days, is_default,
                active, sort_order, external_product_ref, external_price_ref,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            tier.to_db_tuple()
        )
        logger.info("tier_created", tier_id=tier.id, creator_id=tier.creator_id, name=tier.name)
        return tier

    def update(self, tier: SubscriptionTier) -> SubscriptionTier:
        """Overwrite every mutable column of a tier."""
        row = tier.to_db_tuple()
        # row minus id, creator_id, created_at; updated_at then id for the WHERE
        self.db.execute(
            """UPDATE subscription_tiers SET
                name = ?, description = ?, price = ?, currency = ?, billing_cycle = ?,
                feature_entitlements = ?, usage_caps = ?, trial_period_days = ?,
                is_default = ?, active = ?, sort_order = ?, external_product_ref = ?,
                external_price_ref = ?, updated_at = ?
               WHERE id = ?""",
            row[2:15] + (row[16], tier.id)
        )
        return tier

    def get(self, tier_id: str) -> Optional[SubscriptionTier]:
        results = self.db.execute("SELECT * FROM subscription_tiers WHERE id = ?", (tier_id,))
        return SubscriptionTier.from_row(results[0]) if results else None

    def list_by_creator(self, creator_id: str, include_inactive: bool = False) -> List[SubscriptionTier]:
        """Creator's tiers by sort order, then price."""
        query = "SELECT * FROM subscription_tiers WHERE creator_id = ?"
        params: Tuple[Any, ...] = (creator_id,)
        if not include_inactive:
            query += " AND active = ?"
            params += (True,)
        query += " ORDER BY sort_order ASC, price ASC"
        return [SubscriptionTier.from_row(r) for r in self.db.execute(query, params)]

    def clear_default(self, creator_id: str, keep_tier_id: str) -> None:
        """Unset is_default on every other tier of the creator."""
        self.db.execute(
            "UPDATE subscription_tiers SET is_default = ?, updated_at = ? WHERE creator_id = ? AND id != ? AND is_default = ?",
            (False, _now(), creator_id, keep_tier_id, True)
        )

    def delete(self, tier_id: str) -> None:
        self.db.execute("DELETE FROM subscription_tiers WHERE id = ?", (tier_id,))
        logger.info("tier_deleted", tier_id=tier_id)

    def has_history(self, tier_id: str) -> bool:
        """True when assignments or overages still reference the tier."""
        results = self.db.execute(
            """SELECT
                (SELECT COUNT(*) FROM customer_tier_assignments WHERE tier_id = ?) +
                (SELECT COUNT(*) FROM tier_usage_overages WHERE tier_id = ?) AS cnt""",
            (tier_id, tier_id)
        )
        return bool(results and int(results[0]["cnt"]))

    def count_current_assignments(self, tier_id: str) -> int:
        results = self.db.execute(
            f"""SELECT COUNT(*) as cnt FROM customer_tier_assignments
                WHERE tier_id = ? AND status IN ({_placeholders(CURRENT_STATUSES)})""",
            (tier_id, *CURRENT_STATUSES)
        )
        return int(results[0]["cnt"]) if results else 0


class AssignmentRepository:
    """Repository for customer tier assignments."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, assignment: CustomerTierAssignment) -> CustomerTierAssignment:
        """Create or replace the (customer, creator) assignment."""
        self.db.execute(
            """INSERT INTO customer_tier_assignments
               (id, customer_id, creator_id, tier_id, status,
                current_period_start, current_period_end, trial_start, trial_end,
                external_subscription_ref, external_customer_ref,
                subscription_item_refs, cancel_at_period_end, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (customer_id, creator_id) DO UPDATE SET
                tier_id = excluded.tier_id,
                status = excluded.status,
                current_period_start = excluded.current_period_start,
                current_period_end = excluded.current_period_end,
                trial_start = excluded.trial_start,
                trial_end = excluded.trial_end,
                external_subscription_ref = excluded.external_subscription_ref,
                external_customer_ref = excluded.external_customer_ref,
                subscription_item_refs = excluded.subscription_item_refs,
                cancel_at_period_end = excluded.cancel_at_period_end,
                updated_at = excluded.updated_at""",
            assignment.to_db_tuple()
        )
        stored = self.get(assignment.customer_id, assignment.creator_id)
        logger.info(
            "assignment_upserted",
            customer_id=assignment.customer_id,
            creator_id=assignment.creator_id,
            tier_id=assignment.tier_id,
            status=assignment.status,
        )
        return stored or assignment

    def get(self, customer_id: str, creator_id: str) -> Optional[CustomerTierAssignment]:
        results = self.db.execute(
            "SELECT * FROM customer_tier_assignments WHERE customer_id = ? AND creator_id = ?",
            (customer_id, creator_id)
        )
        return CustomerTierAssignment.from_row(results[0]) if results else None

    def get_current(self, customer_id: str, creator_id: str) -> Optional[CustomerTierAssignment]:
        """Assignment with status active, trialing or past_due."""
        results = self.db.execute(
            f"""SELECT * FROM customer_tier_assignments
                WHERE customer_id = ? AND creator_id = ?
                  AND status IN ({_placeholders(CURRENT_STATUSES)})""",
            (customer_id, creator_id, *CURRENT_STATUSES)
        )
        return CustomerTierAssignment.from_row(results[0]) if results else None

    def list_by_creator(self, creator_id: str, statuses: Optional[Iterable[str]] = None) -> List[CustomerTierAssignment]:
        query = "SELECT * FROM customer_tier_assignments WHERE creator_id = ?"
        params: Tuple[Any, ...] = (creator_id,)
        if statuses:
            statuses = tuple(statuses)
            query += f" AND status IN ({_placeholders(statuses)})"
            params += statuses
        query += " ORDER BY created_at ASC"
        return [CustomerTierAssignment.from_row(r) for r in self.db.execute(query, params)]


class OverageRepository:
    """Repository for tier usage overages."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, overage: TierUsageOverage) -> TierUsageOverage:
        """
        Insert or recompute an overage row.

        A billed row is left as it is; the stored row is returned either way.
        """
        self.db.execute(
            """INSERT INTO tier_usage_overages
               (id, customer_id, creator_id, tier_id, meter_id, billing_period,
                limit_value, actual_usage, overage_amount, overage_price,
                overage_cost, currency, billed, billed_at,
                external_invoice_item_ref, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (customer_id, creator_id, tier_id, meter_id, billing_period) DO UPDATE SET
                limit_value = excluded.limit_value,
                actual_usage = excluded.actual_usage,
                overage_amount = excluded.overage_amount,
                overage_price = excluded.overage_price,
                overage_cost = excluded.overage_cost,
                currency = excluded.currency,
                updated_at = excluded.updated_at
               WHERE tier_usage_overages.billed = ?""",
            overage.to_db_tuple() + (False,)
        )
        stored = self.get_by_key(
            overage.customer_id, overage.creator_id, overage.tier_id, overage.meter_id, overage.billing_period
        )
        return stored or overage

    def get(self, overage_id: str) -> Optional[TierUsageOverage]:
        results = self.db.execute("SELECT * FROM tier_usage_overages WHERE id = ?", (overage_id,))
        return TierUsageOverage.from_row(results[0]) if results else None

    def get_by_key(
        self,
        customer_id: str,
        creator_id: str,
        tier_id: str,
        meter_id: str,
        billing_period: str,
    ) -> Optional[TierUsageOverage]:
        results = self.db.execute(
            """SELECT * FROM tier_usage_overages
               WHERE customer_id = ? AND creator_id = ? AND tier_id = ?
                 AND meter_id = ? AND billing_period = ?""",
            (customer_id, creator_id, tier_id, meter_id, billing_period)
        )
        return TierUsageOverage.from_row(results[0]) if results else None

    def list_for_customer(
        self,
        customer_id: str,
        creator_id: str,
        billing_period: Optional[str] = None,
        unbilled_only: bool = False,
    ) -> List[TierUsageOverage]:
        query = "SELECT * FROM tier_usage_overages WHERE customer_id = ? AND creator_id = ?"
        params: Tuple[Any, ...] = (customer_id, creator_id)
        if billing_period:
            query += " AND billing_period = ?"
            params += (billing_period,)
        if unbilled_only:
            query += " AND billed = ?"
            params += (False,)
        query += " ORDER BY billing_period DESC, meter_id ASC"
        return [TierUsageOverage.from_row(r) for r in self.db.execute(query, params)]

    def count(self, customer_id: str, creator_id: str, billing_period: str) -> int:
        results = self.db.execute(
            """SELECT COUNT(*) as cnt FROM tier_usage_overages
               WHERE customer_id = ? AND creator_id = ? AND billing_period = ?""",
            (customer_id, creator_id, billing_period)
        )
        return int(results[0]["cnt"]) if results else 0

    def delete_stale(
        self,
        customer_id: str,
        creator_id: str,
        tier_id: str,
        billing_period: str,
        keep_meter_ids: Iterable[str],
    ) -> int:
        """Drop unbilled rows of a tier's period whose meter no longer has an overage."""
        keep = set(keep_meter_ids)
        stale = [
            o for o in self.list_for_customer(customer_id, creator_id, billing_period, unbilled_only=True)
            if o.tier_id == tier_id and o.meter_id not in keep
        ]
        for overage in stale:
            self.db.execute(
                "DELETE FROM tier_usage_overages WHERE id = ? AND billed = ?",
                (overage.id, False)
            )
        if stale:
            logger.info("stale_overages_removed", customer_id=customer_id, billing_period=billing_period,
                        count=len(stale))
        return len(stale)

    def mark_billed(self, overage_id: str, invoice_item_ref: Optional[str]) -> None:
        self.db.execute(
            """UPDATE tier_usage_overages
               SET billed = ?, billed_at = ?, external_invoice_item_ref = ?, updated_at = ?
               WHERE id = ? AND billed = ?""",
            (True, _now(), invoice_item_ref, _now(), overage_id, False)
        )
        logger.info("overage_billed", overage_id=overage_id, invoice_item_ref=invoice_item_ref)

    def set_invoice_item_ref(self, overage_id: str, invoice_item_ref: str) -> None:
        self.db.execute(
            "UPDATE tier_usage_overages SET external_invoice_item_ref = ?, updated_at = ? WHERE id = ?",
            (invoice_item_ref, _now(), overage_id)
        )


class BillingSyncRepository:
    """Repository for usage billing-sync records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, record: UsageBillingSync) -> UsageBillingSync:
        """Write the full state of the (meter, user, period) sync record."""
        self.db.execute(
            """INSERT INTO usage_billing_sync
               (id, meter_id, user_id, billing_period, usage_quantity,
                external_usage_record_ref, external_subscription_item_ref,
                billing_status, sync_attempts, last_sync_attempt, sync_error,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (meter_id, user_id, billing_period) DO UPDATE SET
                usage_quantity = excluded.usage_quantity,
                external_usage_record_ref = excluded.external_usage_record_ref,
                external_subscription_item_ref = excluded.external_subscription_item_ref,
                billing_status = excluded.billing_status,
                sync_attempts = excluded.sync_attempts,
                last_sync_attempt = excluded.last_sync_attempt,
                sync_error = excluded.sync_error,
                updated_at = excluded.updated_at""",
            record.to_db_tuple()
        )
        stored = self.get(record.meter_id, record.user_id, record.billing_period)
        return stored or record

    def get(self, meter_id: str, user_id: str, billing_period: str) -> Optional[UsageBillingSync]:
        results = self.db.execute(
            "SELECT * FROM usage_billing_sync WHERE meter_id = ? AND user_id = ? AND billing_period = ?",
            (meter_id, user_id, billing_period)
        )
        return UsageBillingSync.from_row(results[0]) if results else None

    def get_by_id(self, record_id: str) -> Optional[UsageBillingSync]:
        results = self.db.execute("SELECT * FROM usage_billing_sync WHERE id = ?", (record_id,))
        return UsageBillingSync.from_row(results[0]) if results else None

    def list_retryable(self, max_attempts: int, limit: int = 100) -> List[UsageBillingSync]:
        """Failed records under the attempt bound, oldest attempt first."""
        results = self.db.execute(
            """SELECT * FROM usage_billing_sync
               WHERE billing_status = ? AND sync_attempts < ?
               ORDER BY last_sync_attempt ASC
               LIMIT ?""",
            (BillingStatus.FAILED.value, max_attempts, limit)
        )
        return [UsageBillingSync.from_row(r) for r in results]

    def list_by_status(self, status: str, limit: int = 100) -> List[UsageBillingSync]:
        results = self.db.execute(
            "SELECT * FROM usage_billing_sync WHERE billing_status = ? ORDER BY updated_at ASC LIMIT ?",
            (status, limit)
        )
        return [UsageBillingSync.from_row(r) for r in results]
