"""
Tests for aggregation reducers and the aggregation engine
"""

import pytest
from dataclasses import dataclass, field
from typing import Any, Dict

from meter_rail.core import AggregationType, aggregate_events
from meter_rail.core.errors import ValidationError
from meter_rail.metering import MeterSpec

from conftest import CREATOR, CUSTOMER, PERIOD, track


@dataclass
class Event:
    event_value: float
    properties: Dict[str, Any] = field(default_factory=dict)


class TestReducers:
    """Test the pure aggregation reducers."""

    def test_count(self):
        value, count = aggregate_events(AggregationType.COUNT, [Event(5), Event(7)])

        assert value == 2
        assert count == 2

    def test_sum_and_duration(self):
        events = [Event(1.5), Event(2.5), Event(6)]

        assert aggregate_events(AggregationType.SUM, events)[0] == 10
        assert aggregate_events(AggregationType.DURATION, events)[0] == 10

    def test_max(self):
        assert aggregate_events("max", [Event(3), Event(11), Event(4)])[0] == 11

    def test_unique_counts_distinct_property(self):
        """Repeated values of the unique property count once."""
        events = [
            Event(1, {"session_id": "a"}),
            Event(1, {"session_id": "b"}),
            Event(1, {"session_id": "a"}),
            Event(1, {}),
        ]

        value, count = aggregate_events(AggregationType.UNIQUE, events, unique_property="session_id")

        assert value == 2
        assert count == 4

    def test_unique_without_property_uses_payload(self):
        events = [Event(1, {"a": 1, "b": 2}), Event(1, {"b": 2, "a": 1}), Event(1, {"a": 2})]

        assert aggregate_events(AggregationType.UNIQUE, events)[0] == 2

    def test_no_events(self):
        assert aggregate_events(AggregationType.MAX, []) == (0.0, 0)


class TestAggregationEngine:
    """Test stored aggregates."""

    @pytest.fixture
    def meter(self, services):
        return services.registry.create_meter(CREATOR, MeterSpec(
            event_name="tokens",
            display_name="Tokens",
            aggregation_type="sum",
        ))

    def test_ingest_keeps_aggregate_current(self, services, meter):
        track(services, 3, value=10, event_name="tokens")

        aggregate = services.aggregation.get_aggregate(meter.id, CUSTOMER, PERIOD)

        assert aggregate.aggregate_value == 30
        assert aggregate.event_count == 3

    def test_recompute_is_idempotent(self, services, meter):
        track(services, 2, value=4, event_name="tokens")

        first = services.aggregation.recompute_aggregate(meter.id, CUSTOMER, PERIOD)
        second = services.aggregation.recompute_aggregate(meter.id, CUSTOMER, PERIOD)

        assert first.aggregate_value == second.aggregate_value == 8
        assert first.id == second.id

    def test_events_in_other_periods_excluded(self, services, meter):
        track(services, 1, value=5, event_name="tokens", timestamp="2026-03-31T23:59:59Z")
        track(services, 1, value=7, event_name="tokens", timestamp="2026-04-01T00:00:00Z")

        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, "2026-03") == 5
        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, "2026-04") == 7

    def test_reconcile_rebuilds_missing_aggregates(self, services, meter, temp_db):
        track(services, 2, value=3, event_name="tokens")
        temp_db.execute("DELETE FROM usage_aggregates")

        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, PERIOD) == 0

        rebuilt = services.aggregation.reconcile_period(CREATOR, PERIOD)

        assert rebuilt == 1
        assert services.aggregation.get_current_usage(meter.id, CUSTOMER, PERIOD) == 6

    def test_invalid_period_rejected(self, services, meter):
        with pytest.raises(ValidationError):
            services.aggregation.get_current_usage(meter.id, CUSTOMER, "not-a-period")

    def test_usage_analytics(self, services, meter):
        track(services, 2, value=10, event_name="tokens", user_id="alice")
        track(services, 1, value=5, event_name="tokens", user_id="bob")
        track(services, 1, value=1, event_name="tokens", user_id="bob", timestamp="2026-04-02T00:00:00Z")

        analytics = services.aggregation.get_usage_analytics(CREATOR, "2026-03-01", "2026-04-30")

        assert analytics.total_usage == 26
        assert analytics.usage_by_user == {"alice": 20, "bob": 6}
        assert analytics.usage_by_meter == {"tokens": 26}
        assert [t["billing_period"] for t in analytics.usage_trend] == ["2026-03", "2026-04"]
        assert analytics.top_users[0] == {"user_id": "alice", "usage": 20}

    def test_analytics_range_must_be_ordered(self, services):
        with pytest.raises(ValidationError):
            services.aggregation.get_usage_analytics(CREATOR, "2026-04-01", "2026-03-01")
