"""
Pytest Configuration and Fixtures
"""

import os
import sys
import time
import pytest
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)

from meter_rail.billing import BillingProvider, TierSpec
from meter_rail.config import Settings
from meter_rail.core.errors import ProviderError
from meter_rail.metering import InlineDispatcher, MeterSpec, PlanLimitSpec, TrackUsageRequest
from meter_rail.persistence import Database
from meter_rail.services import build_services

CREATOR = "creator_1"
CUSTOMER = "user_1"
PERIOD = "2026-03"
EVENT_TIME = "2026-03-15T12:00:00Z"
PERIOD_START = "2026-03-01T00:00:00Z"


class FakeBillingProvider(BillingProvider):
    """Records provider calls; fails or stalls on demand."""

    def __init__(self):
        self.usage_reports = []
        self.line_items = []
        self.subscription_changes = []
        self.fail_usage = 0          # number of report_usage calls to fail
        self.fail_customers = set()  # customer refs whose line items fail
        self.fail_subscriptions = False
        self.delay = 0.0

    def report_usage(self, report):
        if self.delay:
            time.sleep(self.delay)
        if self.fail_usage > 0:
            self.fail_usage -= 1
            raise ProviderError("provider unavailable")
        self.usage_reports.append(report)
        return f"mbur_{len(self.usage_reports)}"

    def create_invoice_line_item(self, item):
        if item.customer_ref in self.fail_customers:
            raise RuntimeError("card_declined")
        self.line_items.append(item)
        return f"ii_{len(self.line_items)}"

    def change_subscription_price(self, change):
        if self.fail_subscriptions:
            raise ProviderError("subscription update rejected")
        self.subscription_changes.append(change)
        return change.subscription_ref


@pytest.fixture
def temp_db():
    """Create a temporary, initialized database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(f"sqlite:///{db_path}")
    db.initialize()

    yield db

    db.close()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except FileNotFoundError:
            pass


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def settings(temp_db):
    return Settings(
        database_url=temp_db.database_url,
        api_key="test-key-12345",
        provider_timeout_seconds=0.2,
    )


@pytest.fixture
def services(settings, temp_db, provider):
    """Full pipeline with inline dispatch, so aggregates are fresh after each event."""
    built = build_services(settings=settings, db=temp_db, provider=provider, dispatcher=InlineDispatcher())
    yield built
    built.dispatcher.shutdown()


def make_pro_plan(services, hard_cap=False, limit=1000, overage_price=0.002, threshold=0.9):
    """Meter `api_calls` (sum) and tier Pro capped at `limit`, with user_1 assigned."""
    meter = services.registry.create_meter(CREATOR, MeterSpec(
        event_name="api_calls",
        display_name="API Calls",
        aggregation_type="sum",
        unit_name="calls",
        plan_limits=[PlanLimitSpec(
            plan_name="Pro",
            limit_value=limit,
            overage_price=overage_price,
            soft_limit_threshold=threshold,
            hard_cap=hard_cap,
        )],
    ))
    tier = services.tiers.create_tier(CREATOR, TierSpec(
        name="Pro",
        price=49.0,
        usage_caps={"api_calls": limit},
    ))
    services.tiers.assign_customer_to_tier(
        CUSTOMER,
        CREATOR,
        tier.id,
        external_customer_ref="cus_123",
        subscription_item_refs={"api_calls": "si_123"},
        start=PERIOD_START,
    )
    return meter, tier


def track(services, count, value=1, user_id=CUSTOMER, event_name="api_calls", timestamp=EVENT_TIME):
    """Track `count` events; returns the results."""
    return [
        services.tracker.track_usage(CREATOR, TrackUsageRequest(
            event_name=event_name,
            user_id=user_id,
            value=value,
            timestamp=timestamp,
        ))
        for _ in range(count)
    ]
