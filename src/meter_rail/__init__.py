"""
METER RAIL - Usage Metering & Tier Enforcement

Records billable usage events, rolls them into billing-period totals,
enforces subscription-tier limits in real time and reconciles overage
charges with the billing provider.
"""

__version__ = "1.0.0"
