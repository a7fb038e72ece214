"""Calendar arithmetic for service cycles.

Months are added with rollover: a day that does not exist in the target
month spills into the next one (31 Aug + 6 months is 3 Mar, or 2 Mar after
a leap-year February). Every due and escalation date in the system goes
through here.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from dateutil.relativedelta import relativedelta

ALLOWED_INTERVAL_MONTHS: tuple[int, ...] = (6, 9, 12)
ESCALATION_MONTHS = 1


class InvalidIntervalError(ValueError):
    """Raised when a reminder interval is not one of the supported month counts."""


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_interval(interval_months: object) -> int:
    if isinstance(interval_months, bool) or not isinstance(interval_months, int):
        raise InvalidIntervalError(f"reminder interval must be one of {ALLOWED_INTERVAL_MONTHS} months")
    if interval_months not in ALLOWED_INTERVAL_MONTHS:
        raise InvalidIntervalError(
            f"reminder interval must be one of {ALLOWED_INTERVAL_MONTHS} months, got {interval_months}"
        )
    return interval_months


def add_months(value: datetime, months: int) -> datetime:
    shifted = value + relativedelta(months=months)
    # relativedelta clamps to the month's last day; spill the missing days over
    return shifted + timedelta(days=value.day - shifted.day)


def due_date(last_serviced: datetime, interval_months: int) -> datetime:
    return add_months(coerce_utc(last_serviced), validate_interval(interval_months))


def escalation_date(due: datetime) -> datetime:
    return add_months(coerce_utc(due), ESCALATION_MONTHS)
