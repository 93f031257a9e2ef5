"""
LEDGER ENGINE: SETTLEMENT CLOCK

Pure timestamp arithmetic for the T+1 settlement rule.

Rules (evaluated in the operating timezone):
- T+1: settlement is 24 hours after payment
- Cutoff: payments at or after the cutoff hour (16:00) are treated as made on
  the next calendar day before T+1 is added (effectively T+2)
- Weekend: a nominal settlement date on Saturday moves to Monday (+2 days),
  on Sunday to Monday (+1 day)
- Readiness: never on Saturday/Sunday, never before the expected date, and
  never less than 24 hours after payment

Naive datetimes are treated as UTC (that is how Motor returns them). Results
are timezone-aware in the operating timezone; use `to_storage` before
persisting.

Usage:
    clock = SettlementClock()
    expected = clock.expected_settlement_date(paid_at)
    if clock.is_ready_for_settlement(paid_at, expected, now):
        ...
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_CUTOFF_HOUR = 16

SATURDAY = 5
SUNDAY = 6

T_PLUS_ONE = timedelta(hours=24)

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def utcnow() -> datetime:
    """Timezone-aware current UTC time. Default clock for the engine."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to naive UTC for MongoDB storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SettlementClock:
    """Settlement date calculator bound to an operating timezone and cutoff hour."""

    def __init__(self, tz_name: str = DEFAULT_TIMEZONE, cutoff_hour: int = DEFAULT_CUTOFF_HOUR):
        self.tz = ZoneInfo(tz_name)
        self.cutoff_hour = cutoff_hour

    def localize(self, value: datetime) -> datetime:
        """Express a timestamp in the operating timezone."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz)

    def is_weekend(self, value: datetime) -> bool:
        return self.localize(value).weekday() in (SATURDAY, SUNDAY)

    def is_after_cutoff(self, paid_at: datetime) -> bool:
        return self.localize(paid_at).hour >= self.cutoff_hour

    def expected_settlement_date(self, paid_at: datetime) -> datetime:
        """Compute when a payment made at `paid_at` becomes settleable."""
        effective = self.localize(paid_at)

        if effective.hour >= self.cutoff_hour:
            effective = effective + timedelta(days=1)

        settlement = effective + T_PLUS_ONE

        weekday = settlement.weekday()
        if weekday == SATURDAY:
            settlement = settlement + timedelta(days=2)
        elif weekday == SUNDAY:
            settlement = settlement + timedelta(days=1)

        return settlement

    def is_ready_for_settlement(
        self,
        paid_at: datetime,
        expected_settlement_date: Optional[datetime],
        now: datetime
    ) -> bool:
        """
        Check if a paid transaction may be promoted to settled at `now`.
        A missing expected date is recomputed from paid_at.
        """
        local_now = self.localize(now)

        if local_now.weekday() in (SATURDAY, SUNDAY):
            return False

        if _as_utc(now) - _as_utc(paid_at) < T_PLUS_ONE:
            return False

        if expected_settlement_date is None:
            expected_settlement_date = self.expected_settlement_date(paid_at)

        return _as_utc(now) >= _as_utc(expected_settlement_date)

    def settlement_date_label(self, expected_settlement_date: datetime, now: datetime) -> str:
        """'Today', 'Tomorrow' or the weekday name. Display only."""
        settlement_day = self.localize(expected_settlement_date).date()
        today = self.localize(now).date()

        if settlement_day == today:
            return "Today"
        if settlement_day == today + timedelta(days=1):
            return "Tomorrow"
        return DAY_NAMES[settlement_day.weekday()]

    def settlement_status_text(
        self,
        expected_settlement_date: Optional[datetime],
        settlement_status: str,
        now: datetime
    ) -> str:
        if settlement_status == "settled":
            return "Settled"
        if expected_settlement_date is None:
            return "Settling soon"

        remaining = _as_utc(expected_settlement_date) - _as_utc(now)
        hours = int(remaining.total_seconds() // 3600)
        days = hours // 24

        if remaining.total_seconds() <= 0:
            return "Settling soon"
        if days > 0:
            return f"Settles in {days} day{'s' if days > 1 else ''}"
        if hours > 0:
            return f"Settles in {hours} hour{'s' if hours > 1 else ''}"
        return "Settling soon"
