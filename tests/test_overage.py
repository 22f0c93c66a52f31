"""
Tests for overage calculation
"""

import pytest
from decimal import Decimal

from meter_rail.billing import compute_overage, to_minor_units

from conftest import CREATOR, CUSTOMER, PERIOD, make_pro_plan, track


class TestComputeOverage:
    """Test the overage formula."""

    def test_formula(self):
        amount, cost = compute_overage(150, 100, 0.01)

        assert amount == Decimal("50")
        assert cost == Decimal("0.50")

    def test_no_overage_under_limit(self):
        amount, cost = compute_overage(80, 100, 0.01)

        assert amount == 0
        assert cost == 0

    def test_decimal_cost_has_no_float_noise(self):
        _, cost = compute_overage(103, 100, 0.1)

        assert cost == Decimal("0.3")

    def test_minor_units_round_half_up(self):
        assert to_minor_units(Decimal("0.505")) == 51
        assert to_minor_units(0.2) == 20


class TestOverageCalculator:
    """Test stored overages."""

    def test_overage_stored(self, services):
        make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=150)

        overages = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)

        assert len(overages) == 1
        assert overages[0].actual_usage == 150
        assert overages[0].overage_amount == 50
        assert overages[0].overage_cost == pytest.approx(0.50)
        assert overages[0].billed is False

    def test_recalculation_updates_single_row(self, services, temp_db):
        make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=150)
        first = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)[0]

        track(services, 1, value=10)
        second = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)[0]

        rows = temp_db.execute("SELECT COUNT(*) AS n FROM tier_usage_overages")
        assert rows[0]["n"] == 1
        assert second.id == first.id
        assert second.overage_amount == 60

    def test_billed_overage_not_changed(self, services, temp_db):
        make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=150)
        overage = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)[0]
        services.overages.overages.mark_billed(overage.id, "ii_1")

        track(services, 1, value=50)
        again = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)[0]

        assert again.billed is True
        assert again.overage_amount == 50
        assert again.external_invoice_item_ref == "ii_1"

    def test_no_overage_price_not_billable(self, services):
        make_pro_plan(services, limit=100, overage_price=None)
        track(services, 1, value=150)

        assert services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD) == []

    def test_preview_writes_nothing(self, services, temp_db):
        make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=120)

        preview = services.overages.preview_overages(CUSTOMER, CREATOR, PERIOD)

        assert preview[0].overage_amount == 20
        assert temp_db.execute("SELECT COUNT(*) AS n FROM tier_usage_overages")[0]["n"] == 0
        assert services.overages.estimate_overage_cost(CUSTOMER, CREATOR, PERIOD) == pytest.approx(0.20)

    def test_deactivated_meter_still_billed(self, services):
        meter, _ = make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=130)
        services.registry.deactivate_meter(CREATOR, meter.id)

        overages = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)

        assert overages[0].overage_amount == 30

    def test_customer_without_assignment(self, services):
        assert services.overages.calculate_usage_overages("nobody", CREATOR, PERIOD) == []

    def test_raised_cap_removes_unbilled_overage(self, services, temp_db):
        _, tier = make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=150)
        services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)

        services.tiers.update_tier(CREATOR, tier.id, {"usage_caps": {"api_calls": 500}})
        overages = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)

        assert overages == []
        assert temp_db.execute("SELECT COUNT(*) AS n FROM tier_usage_overages")[0]["n"] == 0

    def test_raised_cap_keeps_billed_overage(self, services):
        _, tier = make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=150)
        overage = services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)[0]
        services.overages.overages.mark_billed(overage.id, "ii_1")

        services.tiers.update_tier(CREATOR, tier.id, {"usage_caps": {"api_calls": 500}})
        services.overages.calculate_usage_overages(CUSTOMER, CREATOR, PERIOD)

        assert services.overages.overages.get(overage.id).overage_amount == 50
