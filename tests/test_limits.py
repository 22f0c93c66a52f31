"""
Tests for limit policy evaluation
"""

import pytest

from meter_rail.core import LimitPolicy, evaluate_limit


class TestEvaluateLimit:
    """Test the shared soft/hard limit thresholds."""

    def test_below_threshold(self):
        result = evaluate_limit(899, 1000, LimitPolicy(soft_limit_threshold=0.9))

        assert result.warn is False
        assert result.block is False
        assert result.usage_percentage == pytest.approx(89.9)

    def test_threshold_is_inclusive(self):
        """Exactly at the threshold warns."""
        result = evaluate_limit(900, 1000, LimitPolicy(soft_limit_threshold=0.9))

        assert result.warn is True

    def test_soft_limit_never_blocks(self):
        result = evaluate_limit(5000, 1000, LimitPolicy(hard_cap=False))

        assert result.warn is True
        assert result.block is False
        assert result.at_cap is False

    def test_hard_cap_allows_reaching_limit(self):
        """Usage equal to the limit is allowed but at cap."""
        result = evaluate_limit(1000, 1000, LimitPolicy(hard_cap=True))

        assert result.block is False
        assert result.at_cap is True

    def test_hard_cap_blocks_beyond_limit(self):
        result = evaluate_limit(1001, 1000, LimitPolicy(hard_cap=True))

        assert result.block is True

    def test_non_positive_limit_rejected(self):
        with pytest.raises(ValueError):
            evaluate_limit(1, 0, LimitPolicy())

    def test_policy_defaults_without_plan_limit(self):
        policy = LimitPolicy.from_plan_limit(None)

        assert policy.hard_cap is False
        assert policy.soft_limit_threshold == 0.8
