"""
Tests for the tier enforcement gate
"""

import pytest

from meter_rail.enforcement import EnforcementConfig, EnforcementEngine, GateDecision
from meter_rail.billing import TierSpec
from meter_rail.metering import MeterSpec

from conftest import CREATOR, CUSTOMER, EVENT_TIME, make_pro_plan, track


class TestEnforcementDecisions:
    """Test ALLOW / WARN / BLOCK decisions."""

    def test_no_assignment_allows(self, services):
        result = services.enforcement.check_enforcement("nobody", CREATOR, "api_calls")

        assert result.decision == GateDecision.ALLOW
        assert result.limit_value is None

    def test_uncapped_metric_allows(self, services):
        make_pro_plan(services)

        result = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "storage_gb", at=EVENT_TIME)

        assert result.allowed is True
        assert result.billing_period == "2026-03"

    def test_under_threshold_allows(self, services):
        make_pro_plan(services, limit=10, threshold=0.9)
        track(services, 5)

        result = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        assert result.decision == GateDecision.ALLOW
        assert result.current_usage == 5
        assert result.limit_value == 10

    def test_crossing_threshold_warns(self, services):
        make_pro_plan(services, limit=10, threshold=0.9)
        track(services, 8)

        result = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        assert result.should_warn is True
        assert result.should_block is False
        assert result.usage_percentage == pytest.approx(90.0)

    def test_hard_cap_blocks_projected_overage(self, services):
        make_pro_plan(services, limit=10, hard_cap=True)
        track(services, 10)

        result = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        assert result.should_block is True
        assert result.reason == "Usage limit exceeded. Your Pro plan allows 10 api_calls per billing cycle."
        assert result.current_usage == 10

    def test_large_increment_blocked_before_limit(self, services):
        """The check is on usage plus the requested increment."""
        make_pro_plan(services, limit=10, hard_cap=True)
        track(services, 4)

        result = services.enforcement.check_enforcement(
            CUSTOMER, CREATOR, "api_calls", requested_increment=7, at=EVENT_TIME
        )

        assert result.should_block is True

    def test_check_is_read_only(self, services):
        make_pro_plan(services, limit=10, hard_cap=True)
        meter = services.registry.get_meter_by_event(CREATOR, "api_calls")

        for _ in range(3):
            services.enforcement.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, "2026-03") == 0

    def test_period_follows_tier_cycle(self, services):
        """A daily tier enforces against the day's usage."""
        services.registry.create_meter(CREATOR, MeterSpec(event_name="exports", display_name="Exports"))
        tier = services.tiers.create_tier(CREATOR, TierSpec(
            name="Daily", billing_cycle="daily", usage_caps={"exports": 2},
        ))
        services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id)
        track(services, 2, event_name="exports", timestamp="2026-03-15T10:00:00Z")

        same_day = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "exports", at="2026-03-15T20:00:00Z")
        next_day = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "exports", at="2026-03-16T01:00:00Z")

        assert same_day.billing_period == "2026-03-15"
        assert same_day.current_usage == 2
        assert next_day.current_usage == 0

    def test_canceled_assignment_not_enforced(self, services):
        make_pro_plan(services, limit=1, hard_cap=True)
        track(services, 1)
        services.tiers.cancel_assignment(CUSTOMER, CREATOR, at_period_end=False)

        result = services.enforcement.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        assert result.decision == GateDecision.ALLOW


class TestEnforcementFailures:
    """Test fail-closed and fail-open behaviour."""

    def test_fail_closed_raises(self, temp_db, services):
        make_pro_plan(services)
        temp_db.execute("DROP TABLE usage_aggregates")
        engine = EnforcementEngine(temp_db, EnforcementConfig(fail_closed=True))

        with pytest.raises(Exception):
            engine.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)
        assert engine.get_metrics()["errors"] == 1

    def test_fail_open_allows(self, temp_db, services):
        make_pro_plan(services)
        temp_db.execute("DROP TABLE usage_aggregates")
        engine = EnforcementEngine(temp_db, EnforcementConfig(fail_closed=False))

        result = engine.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        assert result.allowed is True
        assert "fail-open" in result.reason


class TestEnforcementMetrics:
    """Test gate counters."""

    def test_metrics_track_decisions(self, services):
        make_pro_plan(services, limit=2, hard_cap=True, threshold=0.5)
        track(services, 2)
        services.enforcement.check_enforcement(CUSTOMER, CREATOR, "api_calls", at=EVENT_TIME)

        metrics = services.enforcement.get_metrics()

        assert metrics["total_checks"] == 3
        assert metrics["blocked"] == 1
        assert metrics["warned"] == 2
