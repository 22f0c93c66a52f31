"""
Tests for subscription tiers and customer assignments
"""

import pytest

from meter_rail.billing import TierSpec
from meter_rail.core.errors import NotFoundError, ValidationError

from conftest import CREATOR, CUSTOMER, PERIOD_START, make_pro_plan, track


class TestTierCrud:
    """Test tier management."""

    def test_create_tier(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(
            name="Team",
            price=99,
            currency="USD",
            feature_entitlements=["sso", "seats:10"],
            usage_caps={"api_calls": 5000},
        ))

        assert tier.currency == "usd"
        assert tier.plan_name == "team"
        assert tier.has_feature("seats")
        assert tier.feature_quantity("seats") == 10
        assert tier.usage_cap("api_calls") == 5000
        assert tier.usage_cap("storage") is None

    def test_zero_cap_is_unlimited(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Free", usage_caps={"api_calls": 0}))

        assert tier.usage_cap("api_calls") is None

    @pytest.mark.parametrize("spec", [
        TierSpec(name=""),
        TierSpec(name="Bad", price=-1),
        TierSpec(name="Bad", billing_cycle="fortnightly"),
        TierSpec(name="Bad", usage_caps={"api_calls": "lots"}),
    ])
    def test_invalid_tier_rejected(self, services, spec):
        with pytest.raises(ValidationError):
            services.tiers.create_tier(CREATOR, spec)

    def test_single_default_tier(self, services):
        first = services.tiers.create_tier(CREATOR, TierSpec(name="Free", is_default=True))
        second = services.tiers.create_tier(CREATOR, TierSpec(name="Starter", is_default=True))

        assert services.tiers.get_tier(CREATOR, first.id).is_default is False
        assert services.tiers.get_tier(CREATOR, second.id).is_default is True

    def test_update_tier(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro", price=49))

        updated = services.tiers.update_tier(CREATOR, tier.id, {"price": 59, "usage_caps": {"api_calls": 2000}})

        assert updated.price == 59
        assert services.tiers.get_tier(CREATOR, tier.id).usage_caps == {"api_calls": 2000}

    def test_update_unknown_field_rejected(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro"))

        with pytest.raises(ValidationError):
            services.tiers.update_tier(CREATOR, tier.id, {"creator_id": "someone_else"})

    @pytest.mark.parametrize("changes", [
        {"usage_caps": ["api_calls"]},
        {"price": "abc"},
        {"trial_period_days": 1.5},
        {"feature_entitlements": "sso"},
        {"name": None},
    ])
    def test_update_wrong_type_rejected(self, services, changes):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro", price=49))

        with pytest.raises(ValidationError):
            services.tiers.update_tier(CREATOR, tier.id, changes)

        assert services.tiers.get_tier(CREATOR, tier.id).price == 49

    def test_tiers_scoped_to_creator(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro"))

        with pytest.raises(NotFoundError):
            services.tiers.get_tier("creator_2", tier.id)

    def test_list_sorted(self, services):
        services.tiers.create_tier(CREATOR, TierSpec(name="Enterprise", price=499, sort_order=3))
        services.tiers.create_tier(CREATOR, TierSpec(name="Free", price=0, sort_order=1))
        services.tiers.create_tier(CREATOR, TierSpec(name="Pro", price=49, sort_order=2))

        assert [t.name for t in services.tiers.list_tiers(CREATOR)] == ["Free", "Pro", "Enterprise"]

    def test_delete_tier_with_customers_refused(self, services):
        _, tier = make_pro_plan(services)

        with pytest.raises(ValidationError):
            services.tiers.delete_tier(CREATOR, tier.id)

        services.tiers.cancel_assignment(CUSTOMER, CREATOR, at_period_end=False)
        services.tiers.delete_tier(CREATOR, tier.id)

        # canceled assignment still references it
        assert services.tiers.get_tier(CREATOR, tier.id).active is False
        assert services.tiers.list_tiers(CREATOR) == []

    def test_delete_unused_tier(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Draft"))

        services.tiers.delete_tier(CREATOR, tier.id)

        with pytest.raises(NotFoundError):
            services.tiers.get_tier(CREATOR, tier.id)


class TestAssignments:
    """Test customer assignments."""

    def test_assignment_period(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro"))

        assignment = services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id, start="2026-01-31T00:00:00Z")

        assert assignment.status == "active"
        assert assignment.current_period_start.startswith("2026-01-31")
        assert assignment.current_period_end.startswith("2026-02-28")

    def test_trial_tier_starts_trialing(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro", trial_period_days=14))

        assignment = services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id, start=PERIOD_START)

        assert assignment.status == "trialing"
        assert assignment.trial_end.startswith("2026-03-15")
        assert assignment.is_current

    def test_reassignment_replaces_and_keeps_refs(self, services):
        _, pro = make_pro_plan(services)
        team = services.tiers.create_tier(CREATOR, TierSpec(name="Team", price=99))

        assignment = services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, team.id)

        assert assignment.tier_id == team.id
        assert assignment.external_customer_ref == "cus_123"
        assert assignment.subscription_item_refs == {"api_calls": "si_123"}
        assert len(services.tiers.list_assignments(CREATOR)) == 1

    def test_advance_period_applies_cancellation(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro"))
        services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id, start=PERIOD_START)
        services.tiers.cancel_assignment(CUSTOMER, CREATOR)

        assert services.tiers.get_current_assignment(CUSTOMER, CREATOR) is not None

        advanced = services.tiers.advance_billing_period(CUSTOMER, CREATOR)

        assert advanced.status == "canceled"
        assert advanced.current_period_start.startswith("2026-04-01")
        assert services.tiers.get_current_assignment(CUSTOMER, CREATOR) is None

    def test_advance_period_ends_trial(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro", trial_period_days=7))
        services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id, start=PERIOD_START)

        assert services.tiers.advance_billing_period(CUSTOMER, CREATOR).status == "active"

    def test_invalid_status_rejected(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Pro"))
        services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id)

        with pytest.raises(ValidationError):
            services.tiers.set_assignment_status(CUSTOMER, CREATOR, "frozen")

    def test_inactive_tier_not_assignable(self, services):
        tier = services.tiers.create_tier(CREATOR, TierSpec(name="Legacy"))
        services.tiers.update_tier(CREATOR, tier.id, {"active": False})

        with pytest.raises(ValidationError):
            services.tiers.assign_customer_to_tier(CUSTOMER, CREATOR, tier.id)


class TestTierViews:
    """Test tier info and upgrade recommendations."""

    def test_customer_tier_info(self, services):
        make_pro_plan(services, limit=100, overage_price=0.01)
        track(services, 1, value=40, timestamp=None)

        info = services.tiers.get_customer_tier_info(CUSTOMER, CREATOR)

        assert info["tier"]["name"] == "Pro"
        assert info["usage_summary"]["api_calls"]["current_usage"] == 40
        assert info["usage_summary"]["api_calls"]["usage_percentage"] == pytest.approx(40.0)
        assert info["next_billing_date"] == info["assignment"]["current_period_end"]

    def test_no_tier_info_without_assignment(self, services):
        assert services.tiers.get_customer_tier_info("nobody", CREATOR) is None

    def test_upgrade_recommended_when_it_saves(self, services):
        make_pro_plan(services, limit=100, overage_price=1.0)
        services.tiers.create_tier(CREATOR, TierSpec(name="Business", price=99, usage_caps={"api_calls": 1000}))
        services.tiers.create_tier(CREATOR, TierSpec(name="Enterprise", price=999, usage_caps={"api_calls": 0}))
        services.tiers.create_tier(CREATOR, TierSpec(name="Hobby", price=9))
        track(services, 1, value=200, timestamp=None)

        options = services.tiers.get_tier_upgrade_options(CUSTOMER, CREATOR)

        assert [o.tier.name for o in options] == ["Business", "Enterprise"]
        business = options[0]
        assert business.recommended is True
        assert business.upgrade_cost == 50
        assert business.upgrade_savings == pytest.approx(100.0)
        assert options[1].recommended is False
