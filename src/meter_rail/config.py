"""
Runtime Configuration

Every setting comes from an environment variable with a development
default, the same variables the server and CLI read.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Configuration for a Meter Rail deployment."""
    database_url: str = "sqlite:///meter_rail.db"
    api_key: str = "dev-key-change-in-production"
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_account_id: Optional[str] = None  # Connect account billed on behalf of
    provider_timeout_seconds: float = 10.0
    dispatch_workers: int = 4
    enforcement_fail_closed: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from the environment."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///meter_rail.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            stripe_account_id=os.environ.get("STRIPE_ACCOUNT_ID"),
            provider_timeout_seconds=float(os.environ.get("BILLING_PROVIDER_TIMEOUT", "10")),
            dispatch_workers=int(os.environ.get("USAGE_DISPATCH_WORKERS", "4")),
            enforcement_fail_closed=not _env_bool("ENFORCEMENT_FAIL_OPEN", False),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            port=int(os.environ.get("PORT", "8000")),
        )
