"""
Billing Sync

Moves usage and overages to the billing provider at period close.

- Overages become invoice line items (process_billing_cycle). One
  customer's failure is recorded and the batch carries on.
- Period usage totals are reported per (meter, user, period) and tracked
  in UsageBillingSync: pending -> synced | failed. A failed record is
  retried until it has MAX_SYNC_ATTEMPTS attempts, then it stays failed
  for an operator.
- A mid-period tier change stores the old tier's overages first and
  switches the provider subscription's price before the assignment.

Provider failures of the batch paths never propagate as exceptions; they
are recorded on the sync record or in the batch result. A tier change is
the exception: it is refused, leaving the customer on the old tier.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union
import structlog

from ..core.errors import NotFoundError, ProviderError, ValidationError
from ..core.periods import BillingCycle, BillingPeriod, to_iso
from ..metering.aggregation import AggregationEngine, resolve_period
from ..persistence import (
    AssignmentRepository,
    BILLABLE_STATUSES,
    BillingStatus,
    BillingSyncRepository,
    CustomerTierAssignment,
    Database,
    MeterRepository,
    OverageRepository,
    TierRepository,
    TierUsageOverage,
    UsageBillingSync,
    new_id,
)
from .overage import OverageCalculator, to_decimal
from .provider import BillingProvider, InvoiceLineItem, SubscriptionChange, UsageReport, call_with_timeout
from .tiers import TierService

logger = structlog.get_logger()

MAX_SYNC_ATTEMPTS = 3


def to_minor_units(amount: Union[float, Decimal]) -> int:
    """Currency amount to cents, half-up."""
    return int((to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class BillingCycleResult:
    """Outcome of a billing cycle: partial failure is a result, not an exception."""
    billing_period: str
    processed: int = 0
    line_items_created: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billing_period": self.billing_period,
            "processed": self.processed,
            "line_items_created": self.line_items_created,
            "errors": self.errors,
        }


class BillingSyncService:
    """Reconciles overages and usage with the billing provider."""

    def __init__(
        self,
        db: Database,
        provider: BillingProvider,
        overage_calculator: OverageCalculator,
        aggregation: AggregationEngine,
        timeout_seconds: float = 10.0,
    ):
        self.provider = provider
        self.overage_calculator = overage_calculator
        self.aggregation = aggregation
        self.timeout_seconds = timeout_seconds

        self.assignments = AssignmentRepository(db)
        self.tiers = TierRepository(db)
        self.meters = MeterRepository(db)
        self.overages = OverageRepository(db)
        self.sync_records = BillingSyncRepository(db)
        self.tier_service = TierService(db)

    # Overages

    def process_billing_cycle(
        self,
        creator_id: str,
        billing_period: Union[str, BillingPeriod],
    ) -> BillingCycleResult:
        """
        Invoice every unbilled overage of the creator's billable customers.

        Safe to re-run: billed overages are skipped and line items carry an
        idempotency key derived from the overage id.
        """
        period = resolve_period(billing_period)
        result = BillingCycleResult(billing_period=period.key)

        assignments = self.assignments.list_by_creator(creator_id, BILLABLE_STATUSES)
        logger.info("billing_cycle_started", creator_id=creator_id, billing_period=period.key, customers=len(assignments))

        for assignment in assignments:
            try:
                result.line_items_created += self._bill_customer(assignment, period)
                result.processed += 1
            except Exception as e:
                result.errors.append(f"Customer {assignment.customer_id}: {e}")
                logger.error(
                    "billing_cycle_customer_failed",
                    creator_id=creator_id,
                    customer_id=assignment.customer_id,
                    billing_period=period.key,
                    error=str(e),
                )

        logger.info(
            "billing_cycle_complete",
            creator_id=creator_id,
            billing_period=period.key,
            processed=result.processed,
            line_items=result.line_items_created,
            errors=len(result.errors),
        )
        return result

    def _bill_customer(self, assignment: CustomerTierAssignment, period: BillingPeriod) -> int:
        self.overage_calculator.calculate_usage_overages(
            assignment.customer_id, assignment.creator_id, period
        )
        # includes overages settled under a tier the customer has since left
        unbilled = self.overages.list_for_customer(
            assignment.customer_id, assignment.creator_id, period.key, unbilled_only=True
        )
        if not unbilled:
            return 0

        if not assignment.external_customer_ref:
            raise ValidationError("no billing customer reference on the assignment")

        for overage in unbilled:
            self._bill_overage(overage, assignment)
        return len(unbilled)

    def _bill_overage(self, overage: TierUsageOverage, assignment: CustomerTierAssignment) -> None:
        tier = self.tiers.get(overage.tier_id)
        meter = self.meters.get(overage.meter_id)
        tier_name = tier.name if tier else overage.tier_id
        unit_name = meter.unit_name if meter else "units"
        meter_name = meter.display_name if meter else "usage"

        item = InvoiceLineItem(
            customer_ref=assignment.external_customer_ref,
            amount_cents=to_minor_units(overage.overage_cost),
            currency=overage.currency,
            description=(
                f"Usage overage: {overage.overage_amount:,g} {unit_name} of {meter_name} "
                f"beyond {tier_name} plan limit"
            ),
            metadata={
                "creator_id": overage.creator_id,
                "customer_id": overage.customer_id,
                "tier_id": overage.tier_id,
                "meter_id": overage.meter_id,
                "billing_period": overage.billing_period,
                "overage_id": overage.id,
            },
            idempotency_key=f"overage-{overage.id}",
        )
        line_item_ref = call_with_timeout(self.provider.create_invoice_line_item, self.timeout_seconds, item)
        self.overages.mark_billed(overage.id, line_item_ref)

    def handle_invoice_paid(self, invoice: Dict[str, Any]) -> int:
        """
        Copy provider line-item ids onto the overages they bill.

        Lines are matched through metadata.overage_id. Returns the number of
        overages updated.
        """
        lines = (invoice.get("lines") or {}).get("data") or []
        updated = 0
        for line in lines:
            overage_id = (line.get("metadata") or {}).get("overage_id")
            line_item_ref = line.get("invoice_item") or line.get("id")
            if not overage_id or not line_item_ref:
                continue
            overage = self.overages.get(overage_id)
            if overage is None:
                logger.warning("invoice_line_unknown_overage", invoice_id=invoice.get("id"), overage_id=overage_id)
                continue
            if overage.billed:
                self.overages.set_invoice_item_ref(overage_id, line_item_ref)
            else:
                self.overages.mark_billed(overage_id, line_item_ref)
            updated += 1

        logger.info("invoice_paid_processed", invoice_id=invoice.get("id"), overages_updated=updated)
        return updated

    # Tier changes

    def process_tier_change(
        self,
        customer_id: str,
        creator_id: str,
        new_tier_id: str,
        prorate: bool = True,
    ) -> CustomerTierAssignment:
        """
        Move a customer to another tier mid-period.

        Overages accrued under the old tier are stored against it first, so
        the next billing cycle still invoices them and the new tier only
        charges usage beyond them. A customer with a provider subscription
        has its price switched before the assignment changes.

        Raises:
            ValidationError: no current tier, or the new tier is inactive or
                has no provider price for a subscribed customer
            ProviderError: the provider rejected the change
        """
        current = self.assignments.get_current(customer_id, creator_id)
        if current is None:
            raise ValidationError(f"Customer {customer_id} has no current tier")
        new_tier = self.tier_service.get_tier(creator_id, new_tier_id)
        if not new_tier.active:
            raise ValidationError(f"Tier is not active: {new_tier_id}")
        if new_tier.id == current.tier_id:
            return current
        if current.external_subscription_ref and not new_tier.external_price_ref:
            raise ValidationError(f"Tier {new_tier.name} has no provider price")

        old_tier = self.tiers.get(current.tier_id)
        period = BillingPeriod.for_instant(old_tier.billing_cycle if old_tier else BillingCycle.MONTHLY)
        settled = self.overage_calculator.calculate_usage_overages(customer_id, creator_id, period)

        if current.external_subscription_ref:
            call_with_timeout(
                self.provider.change_subscription_price,
                self.timeout_seconds,
                SubscriptionChange(
                    subscription_ref=current.external_subscription_ref,
                    price_ref=new_tier.external_price_ref,
                    prorate=prorate,
                    metadata={"tier_id": new_tier.id, "tier_name": new_tier.name},
                ),
            )

        # billing anchor is unchanged
        assignment = self.tier_service.assign_customer_to_tier(
            customer_id, creator_id, new_tier.id, start=current.current_period_start
        )
        logger.info(
            "tier_changed",
            customer_id=customer_id,
            creator_id=creator_id,
            from_tier=current.tier_id,
            to_tier=new_tier.id,
            billing_period=period.key,
            settled_overages=len(settled),
        )
        return assignment

    # Usage totals

    def sync_usage_to_billing(
        self,
        meter_id: str,
        user_id: str,
        billing_period: Union[str, BillingPeriod],
        quantity: Optional[float] = None,
        subscription_item_ref: Optional[str] = None,
    ) -> UsageBillingSync:
        """
        Report a (meter, user, period) total to the provider.

        The quantity defaults to the stored aggregate and the subscription
        item to the one the customer's assignment maps the metric to.
        Returns the sync record, `synced` or `failed`.
        """
        period = resolve_period(billing_period)
        meter = self.meters.get(meter_id)
        if meter is None:
            raise NotFoundError(f"Meter not found: {meter_id}")

        assignment = self.assignments.get(user_id, meter.creator_id)
        if subscription_item_ref is None and assignment is not None:
            subscription_item_ref = assignment.subscription_item_refs.get(meter.event_name)
        if not subscription_item_ref:
            raise ValidationError(f"No subscription item for {meter.event_name} of user {user_id}")

        if quantity is None:
            quantity = self.aggregation.get_current_usage(meter_id, user_id, period)

        record = self.sync_records.get(meter_id, user_id, period.key)
        if record is not None and self._exhausted(record):
            logger.warning(
                "usage_sync_skipped_exhausted",
                meter_id=meter_id,
                user_id=user_id,
                billing_period=period.key,
                attempts=record.sync_attempts,
            )
            return record
        if record is None or record.billing_status != BillingStatus.FAILED.value:
            # a fresh delivery starts a new attempt count
            record = UsageBillingSync(
                id=record.id if record else new_id(),
                meter_id=meter_id,
                user_id=user_id,
                billing_period=period.key,
            )
        record.usage_quantity = float(quantity)
        record.external_subscription_item_ref = subscription_item_ref
        return self._attempt(record, period)

    @staticmethod
    def _exhausted(record: UsageBillingSync) -> bool:
        return (
            record.billing_status == BillingStatus.FAILED.value
            and record.sync_attempts >= MAX_SYNC_ATTEMPTS
        )

    def _attempt(self, record: UsageBillingSync, period: BillingPeriod) -> UsageBillingSync:
        meter = self.meters.get(record.meter_id)
        if meter is None:
            raise NotFoundError(f"Meter not found: {record.meter_id}")
        assignment = self.assignments.get(record.user_id, meter.creator_id)

        now = datetime.now(timezone.utc)
        report = UsageReport(
            subscription_item_id=record.external_subscription_item_ref,
            quantity=record.usage_quantity,
            event_name=meter.event_name,
            customer_ref=assignment.external_customer_ref if assignment else None,
            timestamp=int(min(now, period.end).timestamp()),
            idempotency_key=f"usage-{record.meter_id}-{record.user_id}-{record.billing_period}-{record.usage_quantity:g}",
        )

        record.sync_attempts += 1
        record.last_sync_attempt = to_iso(now)
        record.updated_at = to_iso(now)
        try:
            record.external_usage_record_ref = call_with_timeout(
                self.provider.report_usage, self.timeout_seconds, report
            )
            record.billing_status = BillingStatus.SYNCED.value
            record.sync_error = None
            logger.info(
                "usage_synced",
                meter_id=record.meter_id,
                user_id=record.user_id,
                billing_period=record.billing_period,
                quantity=record.usage_quantity,
                attempts=record.sync_attempts,
            )
        except ProviderError as e:
            record.billing_status = BillingStatus.FAILED.value
            record.sync_error = str(e)
            logger.warning(
                "usage_sync_failed",
                meter_id=record.meter_id,
                user_id=record.user_id,
                billing_period=record.billing_period,
                attempts=record.sync_attempts,
                exhausted=record.sync_attempts >= MAX_SYNC_ATTEMPTS,
                error=str(e),
            )

        return self.sync_records.upsert(record)

    def sync_period_usage(self, creator_id: str, billing_period: Union[str, BillingPeriod]) -> Dict[str, Any]:
        """Report every metric that a billable assignment maps to a subscription item."""
        period = resolve_period(billing_period)
        summary: Dict[str, Any] = {"billing_period": period.key, "synced": 0, "failed": 0, "exhausted": 0, "errors": []}

        for assignment in self.assignments.list_by_creator(creator_id, BILLABLE_STATUSES):
            for metric_name, item_ref in sorted(assignment.subscription_item_refs.items()):
                meter = self.meters.get_by_event(creator_id, metric_name, active_only=False)
                if meter is None:
                    summary["errors"].append(f"Customer {assignment.customer_id}: no meter for {metric_name}")
                    continue
                previous = self.sync_records.get(meter.id, assignment.customer_id, period.key)
                if previous is not None and self._exhausted(previous):
                    summary["exhausted"] += 1
                    continue
                record = self.sync_usage_to_billing(meter.id, assignment.customer_id, period, subscription_item_ref=item_ref)
                if record.billing_status == BillingStatus.SYNCED.value:
                    summary["synced"] += 1
                else:
                    summary["failed"] += 1

        logger.info("period_usage_synced", creator_id=creator_id, billing_period=period.key,
                    synced=summary["synced"], failed=summary["failed"], exhausted=summary["exhausted"])
        return summary

    def queue_pending_usage(self, creator_id: str, billing_period: Union[str, BillingPeriod]) -> int:
        """
        Create `pending` sync records for aggregates not yet delivered.

        A synced record whose total has since changed goes back to pending;
        failed records are left to the retry path. Returns the number queued.
        """
        period = resolve_period(billing_period)
        queued = 0
        for aggregate in self.aggregation.aggregates.list_for_period(creator_id, period.key):
            record = self.sync_records.get(aggregate.meter_id, aggregate.user_id, period.key)
            if record is not None:
                if record.billing_status == BillingStatus.FAILED.value:
                    continue
                if record.billing_status == BillingStatus.SYNCED.value and record.usage_quantity == aggregate.aggregate_value:
                    continue
            self.sync_records.upsert(UsageBillingSync(
                id=record.id if record else new_id(),
                meter_id=aggregate.meter_id,
                user_id=aggregate.user_id,
                billing_period=period.key,
                usage_quantity=aggregate.aggregate_value,
                external_subscription_item_ref=record.external_subscription_item_ref if record else None,
                billing_status=BillingStatus.PENDING.value,
            ))
            queued += 1

        logger.info("usage_queued", creator_id=creator_id, billing_period=period.key, queued=queued)
        return queued

    # Retry

    def get_failed_billing_sync(self, limit: int = 100) -> List[UsageBillingSync]:
        """Failed records still under the attempt bound, oldest attempt first."""
        return self.sync_records.list_retryable(MAX_SYNC_ATTEMPTS, limit)

    def retry_failed_sync(self, record: Union[UsageBillingSync, str]) -> UsageBillingSync:
        """
        Re-attempt delivery of a failed record.

        Raises ValidationError for a record that is not failed or has used
        up its attempts.
        """
        record_id = record if isinstance(record, str) else record.id
        current = self.sync_records.get_by_id(record_id)
        if current is None:
            raise NotFoundError(f"Billing sync record not found: {record_id}")
        if current.billing_status != BillingStatus.FAILED.value:
            raise ValidationError(f"Billing sync record {record_id} is {current.billing_status}, not failed")
        if current.sync_attempts >= MAX_SYNC_ATTEMPTS:
            raise ValidationError(
                f"Billing sync record {record_id} exhausted {MAX_SYNC_ATTEMPTS} attempts; manual intervention required"
            )
        return self._attempt(current, BillingPeriod.parse(current.billing_period))

    def retry_all_failed(self, limit: int = 100) -> Dict[str, int]:
        """Retry every eligible failed record once."""
        counts = {"synced": 0, "failed": 0}
        for record in self.get_failed_billing_sync(limit):
            updated = self.retry_failed_sync(record)
            if updated.billing_status == BillingStatus.SYNCED.value:
                counts["synced"] += 1
            else:
                counts["failed"] += 1
        logger.info("failed_sync_retried", **counts)
        return counts

    def get_billing_sync_status(
        self,
        meter_id: str,
        user_id: str,
        billing_period: Union[str, BillingPeriod],
    ) -> Optional[UsageBillingSync]:
        period = resolve_period(billing_period)
        return self.sync_records.get(meter_id, user_id, period.key)
