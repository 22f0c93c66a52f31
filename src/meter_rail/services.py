"""
Service Wiring

Builds every component over one Database, one BillingProvider and one
Dispatcher. The HTTP server, the CLI and the tests all go through here.
"""

from dataclasses import dataclass
from typing import Optional
import structlog

from .billing import BillingProvider, BillingSyncService, OverageCalculator, StripeBillingProvider, TierService
from .config import Settings
from .enforcement import EnforcementConfig, EnforcementEngine
from .metering import (
    AggregationEngine,
    Dispatcher,
    LimitMonitor,
    MeterRegistry,
    ThreadPoolDispatcher,
    UsageTracker,
)
from .persistence import Database

logger = structlog.get_logger()


@dataclass
class Services:
    """The assembled metering pipeline."""
    settings: Settings
    db: Database
    provider: BillingProvider
    dispatcher: Dispatcher
    registry: MeterRegistry
    aggregation: AggregationEngine
    monitor: LimitMonitor
    enforcement: EnforcementEngine
    tracker: UsageTracker
    tiers: TierService
    overages: OverageCalculator
    billing_sync: BillingSyncService

    def close(self) -> None:
        self.dispatcher.shutdown(wait=True)
        self.db.close()


def build_services(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    provider: Optional[BillingProvider] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Services:
    """Assemble services; anything not passed in is built from settings."""
    settings = settings or Settings.from_env()

    if db is None:
        db = Database(settings.database_url)
    db.initialize()

    provider = provider or StripeBillingProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        account_id=settings.stripe_account_id,
    )
    dispatcher = dispatcher or ThreadPoolDispatcher(max_workers=settings.dispatch_workers)

    registry = MeterRegistry(db)
    aggregation = AggregationEngine(db)
    monitor = LimitMonitor(db)
    enforcement = EnforcementEngine(db, EnforcementConfig(fail_closed=settings.enforcement_fail_closed))
    tracker = UsageTracker(db, enforcement, aggregation, monitor, dispatcher)
    overages = OverageCalculator(db)
    billing_sync = BillingSyncService(
        db,
        provider,
        overages,
        aggregation,
        timeout_seconds=settings.provider_timeout_seconds,
    )

    logger.info(
        "services_built",
        is_postgres=db.is_postgres,
        provider=type(provider).__name__,
        dispatcher=type(dispatcher).__name__,
    )
    return Services(
        settings=settings,
        db=db,
        provider=provider,
        dispatcher=dispatcher,
        registry=registry,
        aggregation=aggregation,
        monitor=monitor,
        enforcement=enforcement,
        tracker=tracker,
        tiers=TierService(db),
        overages=overages,
        billing_sync=billing_sync,
    )
