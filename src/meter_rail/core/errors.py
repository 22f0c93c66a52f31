"""
Error Taxonomy

Validation, not-found and limit errors are returned synchronously to the
immediate caller. Provider errors are recorded on sync records and retried;
they never reach end users.
"""

from typing import Any, Dict, Optional


class MeteringError(Exception):
    """Base class for all metering errors."""
    pass


class ValidationError(MeteringError):
    """Raised for malformed input (duplicate meter, missing field)."""
    pass


class NotFoundError(MeteringError):
    """Raised when a meter, tier or assignment does not exist or is inactive."""
    pass


class LimitExceededError(MeteringError):
    """
    Raised when enforcement blocks a usage increment.

    Carries the figures a caller needs to explain the block to the user.
    """

    def __init__(
        self,
        reason: str,
        current_usage: float = 0.0,
        limit_value: Optional[float] = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.current_usage = current_usage
        self.limit_value = limit_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "current_usage": self.current_usage,
            "limit_value": self.limit_value,
        }


class ProviderError(MeteringError):
    """Raised when a billing provider call fails or times out."""
    pass
