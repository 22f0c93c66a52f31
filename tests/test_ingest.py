"""
Tests for usage ingest behind the enforcement gate
"""

import pytest

from meter_rail.billing import TierSpec
from meter_rail.core.errors import LimitExceededError, NotFoundError, ValidationError
from meter_rail.core.periods import current_period
from meter_rail.metering import MeterSpec, ThreadPoolDispatcher, TrackUsageRequest, UsageTracker

from conftest import CREATOR, CUSTOMER, EVENT_TIME, PERIOD, make_pro_plan, track


class TestTrackUsage:
    """Test event validation and recording."""

    def test_event_recorded(self, services, temp_db):
        meter, _ = make_pro_plan(services)

        result = track(services, 1, value=3)[0]

        assert result.meter_id == meter.id
        assert result.billing_period == PERIOD
        assert result.enforcement.allowed is True
        rows = temp_db.execute("SELECT * FROM usage_events WHERE id = ?", (result.event_id,))
        assert rows[0]["event_value"] == 3

    def test_unknown_event_rejected(self, services):
        with pytest.raises(NotFoundError):
            track(services, 1, event_name="does_not_exist")

    def test_inactive_meter_rejected(self, services):
        meter, _ = make_pro_plan(services)
        services.registry.deactivate_meter(CREATOR, meter.id)

        with pytest.raises(NotFoundError):
            track(services, 1)

    @pytest.mark.parametrize("value", [-1, float("nan"), float("inf"), "ten", True])
    def test_invalid_values_rejected(self, services, value):
        make_pro_plan(services)

        with pytest.raises(ValidationError):
            track(services, 1, value=value)

    def test_missing_user_rejected(self, services):
        make_pro_plan(services)

        with pytest.raises(ValidationError):
            track(services, 1, user_id="")

    def test_bad_timestamp_rejected(self, services):
        make_pro_plan(services)

        with pytest.raises(ValidationError):
            track(services, 1, timestamp="last tuesday")

    def test_zero_value_accepted(self, services):
        meter, _ = make_pro_plan(services)

        track(services, 1, value=0)

        assert services.aggregation.get_aggregate(meter.id, CUSTOMER, PERIOD).event_count == 1

    def test_customer_without_tier_is_not_limited(self, services):
        meter, _ = make_pro_plan(services, limit=1, hard_cap=True)

        track(services, 5, user_id="free_rider")

        assert services.aggregation.get_current_usage(meter.id, "free_rider", PERIOD) == 5


class TestSoftLimitScenario:
    """Soft limit: warnings but no blocking, overage billed at period close."""

    def test_soft_limit_warns_and_overage_accrues(self, services, temp_db):
        meter, _ = make_pro_plan(services, hard_cap=False, limit=1000, overage_price=0.002, threshold=0.9)

        results = track(services, 1100)

        assert results[799].enforcement.should_warn is False
        assert results[900].enforcement.should_warn is True  # event #901
        assert all(r.enforcement.allowed for r in results)
        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, PERIOD) == 1100

        overages = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)

        assert len(overages) == 1
        assert overages[0].overage_amount == 100
        assert overages[0].overage_cost == pytest.approx(0.20)


class TestHardCapScenario:
    """Hard cap: the event that would exceed the cap is never stored."""

    def test_event_beyond_cap_rejected(self, services, temp_db):
        meter, _ = make_pro_plan(services, hard_cap=True, limit=1000, overage_price=0.002, threshold=0.9)
        track(services, 1000)

        with pytest.raises(LimitExceededError) as exc_info:
            track(services, 1)

        assert exc_info.value.current_usage == 1000
        assert exc_info.value.limit_value == 1000
        assert "Pro plan allows 1000 api_calls" in exc_info.value.reason

        count = temp_db.execute(
            "SELECT COUNT(*) AS n FROM usage_events WHERE meter_id = ? AND user_id = ?",
            (meter.id, CUSTOMER),
        )[0]["n"]
        assert count == 1000
        assert services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD) == []


class TestBackgroundRefresh:
    """Test post-ingest work on the thread pool dispatcher."""

    def test_thread_pool_refresh(self, services):
        meter, _ = make_pro_plan(services)
        dispatcher = ThreadPoolDispatcher(max_workers=1)
        tracker = UsageTracker(
            services.db, services.enforcement, services.aggregation, services.monitor, dispatcher
        )

        for _ in range(3):
            tracker.track_usage(CREATOR, TrackUsageRequest("api_calls", CUSTOMER, value=2, timestamp=EVENT_TIME))
        dispatcher.drain(timeout=10)
        dispatcher.shutdown()

        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, PERIOD) == 6

    def test_failed_refresh_does_not_fail_ingest(self, services, monkeypatch):
        meter, _ = make_pro_plan(services)

        def broken(*args, **kwargs):
            raise RuntimeError("aggregate store down")

        monkeypatch.setattr(services.aggregation, "recompute_aggregate", broken)

        result = track(services, 1)[0]

        assert result.event_id
        assert services.aggregation.get_aggregate(meter.id, CUSTOMER, PERIOD) is None

        # reconciliation recovers the lost recompute
        monkeypatch.undo()
        assert services.aggregation.reconcile_period(CREATOR, PERIOD) == 1
        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, PERIOD) == 1


class TestUsageSummary:
    """Test the per-plan usage view."""

    def test_summary_with_alerts(self, services):
        meter, _ = make_pro_plan(services, limit=10, threshold=0.5)
        track(services, 12)

        summary = services.tracker.get_usage_summary(meter.id, CUSTOMER, "Pro", PERIOD)

        assert summary.current_usage == 12
        assert summary.limit_value == 10
        assert summary.usage_percentage == pytest.approx(120.0)
        assert summary.overage_amount == 2
        assert summary.plan_name == "pro"
        assert [a["alert_type"] for a in summary.alerts] == ["soft_limit_reached"]

    def test_summary_only_lists_alerts_of_its_period(self, services):
        meter, _ = make_pro_plan(services, limit=10, threshold=0.5)
        track(services, 12)

        summary = services.tracker.get_usage_summary(meter.id, CUSTOMER, "Pro", "2026-04")

        assert summary.current_usage == 0
        assert summary.alerts == []

    def test_summary_defaults_to_tier_cycle(self, services):
        meter = services.registry.create_meter(CREATOR, MeterSpec(
            event_name="tokens", display_name="Tokens", aggregation_type="sum",
        ))
        tier = services.tiers.create_tier(CREATOR, TierSpec(
            name="Weekly", billing_cycle="weekly", usage_caps={"tokens": 100},
        ))
        services.tiers.assign_customer_to_tier("user_9", CREATOR, tier.id)
        track(services, 1, value=5, user_id="user_9", event_name="tokens", timestamp=None)

        summary = services.tracker.get_usage_summary(meter.id, "user_9", "Weekly")

        assert summary.billing_period == current_period("weekly").key
        assert summary.current_usage == 5
