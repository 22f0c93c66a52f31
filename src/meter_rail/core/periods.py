"""
Billing Periods

A billing period is a calendar-aligned window matching a tier's billing
cycle. Its key encodes the cycle, so any component holding only the key
can rebuild the window:

    daily    2026-10-19
    weekly   2026-W43   (ISO week, Monday start)
    monthly  2026-10
    yearly   2026

Timestamps are stored as fixed-width ISO-8601 UTC strings so that string
comparison in range filters matches chronological order.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union
import re


class BillingCycle(Enum):
    """Tier billing cycles."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


_DAILY_KEY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_WEEKLY_KEY = re.compile(r"^(\d{4})-W(\d{2})$")
_MONTHLY_KEY = re.compile(r"^(\d{4})-(\d{2})$")
_YEARLY_KEY = re.compile(r"^(\d{4})$")


def utc_now() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, datetime, None]) -> datetime:
    """
    Parse an ISO timestamp (or pass through a datetime) as aware UTC.

    Naive values are taken to be UTC. A trailing "Z" is accepted.
    """
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def add_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    """Advance a datetime by one billing cycle (anniversary style)."""
    if cycle == BillingCycle.DAILY:
        return start + timedelta(days=1)
    if cycle == BillingCycle.WEEKLY:
        return start + timedelta(days=7)
    if cycle == BillingCycle.MONTHLY:
        year = start.year + (start.month // 12)
        month = start.month % 12 + 1
        return start.replace(year=year, month=month, day=min(start.day, _days_in_month(year, month)))
    # Feb 29 rolls back to Feb 28 on non-leap years
    year = start.year + 1
    return start.replace(year=year, day=min(start.day, _days_in_month(year, start.month)))


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (date(year, month + 1, 1) - date(year, month, 1)).days


@dataclass(frozen=True)
class BillingPeriod:
    """A billing window: [start, next_start)."""
    cycle: BillingCycle
    key: str
    start: datetime
    next_start: datetime

    @property
    def end(self) -> datetime:
        """Last instant inside the window."""
        return self.next_start - timedelta(microseconds=1)

    @property
    def start_iso(self) -> str:
        return to_iso(self.start)

    @property
    def end_iso(self) -> str:
        return to_iso(self.end)

    @property
    def next_start_iso(self) -> str:
        return to_iso(self.next_start)

    def contains(self, instant: datetime) -> bool:
        instant = parse_timestamp(instant)
        return self.start <= instant < self.next_start

    def next(self) -> "BillingPeriod":
        return BillingPeriod.for_instant(self.cycle, self.next_start)

    @classmethod
    def for_instant(
        cls,
        cycle: Union[BillingCycle, str],
        instant: Union[datetime, str, None] = None,
    ) -> "BillingPeriod":
        """Get the period of the given cycle containing an instant."""
        cycle = BillingCycle(cycle) if isinstance(cycle, str) else cycle
        moment = parse_timestamp(instant)

        if cycle == BillingCycle.DAILY:
            start = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)
            key = start.strftime("%Y-%m-%d")
        elif cycle == BillingCycle.WEEKLY:
            day = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)
            start = day - timedelta(days=day.weekday())
            iso_year, iso_week, _ = start.isocalendar()
            key = f"{iso_year:04d}-W{iso_week:02d}"
        elif cycle == BillingCycle.MONTHLY:
            start = datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)
            key = start.strftime("%Y-%m")
        else:
            start = datetime(moment.year, 1, 1, tzinfo=timezone.utc)
            key = start.strftime("%Y")

        return cls(cycle=cycle, key=key, start=start, next_start=_next_start(cycle, start))

    @classmethod
    def parse(cls, key: str) -> "BillingPeriod":
        """
        Rebuild a period from its key.

        Raises ValueError for keys that match no cycle format.
        """
        key = (key or "").strip()

        match = _DAILY_KEY.match(key)
        if match:
            start = datetime(int(match[1]), int(match[2]), int(match[3]), tzinfo=timezone.utc)
            return cls(BillingCycle.DAILY, key, start, _next_start(BillingCycle.DAILY, start))

        match = _WEEKLY_KEY.match(key)
        if match:
            monday = date.fromisocalendar(int(match[1]), int(match[2]), 1)
            start = datetime(monday.year, monday.month, monday.day, tzinfo=timezone.utc)
            return cls(BillingCycle.WEEKLY, key, start, _next_start(BillingCycle.WEEKLY, start))

        match = _MONTHLY_KEY.match(key)
        if match:
            start = datetime(int(match[1]), int(match[2]), 1, tzinfo=timezone.utc)
            return cls(BillingCycle.MONTHLY, key, start, _next_start(BillingCycle.MONTHLY, start))

        match = _YEARLY_KEY.match(key)
        if match:
            start = datetime(int(match[1]), 1, 1, tzinfo=timezone.utc)
            return cls(BillingCycle.YEARLY, key, start, _next_start(BillingCycle.YEARLY, start))

        raise ValueError(f"Invalid billing period: {key!r}")


def _next_start(cycle: BillingCycle, start: datetime) -> datetime:
    if cycle == BillingCycle.DAILY:
        return start + timedelta(days=1)
    if cycle == BillingCycle.WEEKLY:
        return start + timedelta(days=7)
    if cycle == BillingCycle.MONTHLY:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start.replace(year=start.year + 1)


def current_period(
    cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    now: Optional[datetime] = None,
) -> BillingPeriod:
    """Get the billing period containing now."""
    return BillingPeriod.for_instant(cycle, now or utc_now())
