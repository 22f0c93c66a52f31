"""
Limit Policy Evaluation

One evaluator for the thresholds that both the synchronous enforcement
check and the asynchronous alert check apply:

- warn:   usage / limit >= soft_limit_threshold
- block:  hard_cap and usage > limit
- at_cap: hard_cap and usage >= limit
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_SOFT_LIMIT_THRESHOLD = 0.8


@dataclass(frozen=True)
class LimitPolicy:
    """Enforcement policy for one meter on one plan."""
    hard_cap: bool = False
    soft_limit_threshold: float = DEFAULT_SOFT_LIMIT_THRESHOLD

    @classmethod
    def from_plan_limit(cls, plan_limit: Optional[object]) -> "LimitPolicy":
        """Build from a MeterPlanLimit (or the default policy when None)."""
        if plan_limit is None:
            return cls()
        threshold = getattr(plan_limit, "soft_limit_threshold", None)
        return cls(
            hard_cap=bool(getattr(plan_limit, "hard_cap", False)),
            soft_limit_threshold=DEFAULT_SOFT_LIMIT_THRESHOLD if threshold is None else float(threshold),
        )


@dataclass(frozen=True)
class LimitEvaluation:
    """Outcome of evaluating a usage figure against a limit."""
    usage: float
    limit: float
    usage_percentage: float
    warn: bool
    block: bool
    at_cap: bool


def evaluate_limit(usage: float, limit: float, policy: LimitPolicy) -> LimitEvaluation:
    """
    Evaluate usage against a positive limit.

    Callers treat a missing or non-positive limit as unlimited and must not
    call this for it.
    """
    if limit is None or limit <= 0:
        raise ValueError("evaluate_limit requires a positive limit")

    ratio = usage / limit
    return LimitEvaluation(
        usage=usage,
        limit=limit,
        usage_percentage=ratio * 100,
        # ratio, not percentage: 0.9 * 100 != 90.0 in floats
        warn=ratio >= policy.soft_limit_threshold,
        block=policy.hard_cap and usage > limit,
        at_cap=policy.hard_cap and usage >= limit,
    )
