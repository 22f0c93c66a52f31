"""
METER RAIL - Enforcement Module

The tier gate: a blocked event is never recorded.
"""

from .gate import EnforcementEngine, EnforcementConfig, GateDecision, EnforcementResult

__all__ = [
    "EnforcementEngine",
    "EnforcementConfig",
    "GateDecision",
    "EnforcementResult",
]
