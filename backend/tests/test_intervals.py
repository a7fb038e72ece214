from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rescue_reminders.intervals import InvalidIntervalError, coerce_utc, due_date, escalation_date, validate_interval


def test_due_date_adds_interval_months() -> None:
    last = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    assert due_date(last, 6) == datetime(2024, 7, 15, 10, 30, tzinfo=timezone.utc)
    assert due_date(last, 9) == datetime(2024, 10, 15, 10, 30, tzinfo=timezone.utc)
    assert due_date(last, 12) == datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


def test_escalation_is_one_month_after_due() -> None:
    due = due_date(datetime(2024, 1, 15, tzinfo=timezone.utc), 6)

    assert escalation_date(due) == datetime(2024, 8, 15, tzinfo=timezone.utc)


def test_month_end_rolls_over_into_next_month() -> None:
    assert due_date(datetime(2024, 8, 31, tzinfo=timezone.utc), 6) == datetime(2025, 3, 3, tzinfo=timezone.utc)
    assert due_date(datetime(2023, 8, 31, tzinfo=timezone.utc), 6) == datetime(2024, 3, 2, tzinfo=timezone.utc)
    assert due_date(datetime(2024, 3, 31, 8, 15, tzinfo=timezone.utc), 6) == datetime(
        2024, 10, 1, 8, 15, tzinfo=timezone.utc
    )
    assert escalation_date(datetime(2024, 1, 31, tzinfo=timezone.utc)) == datetime(2024, 3, 2, tzinfo=timezone.utc)
    assert escalation_date(datetime(2025, 3, 3, tzinfo=timezone.utc)) == datetime(2025, 4, 3, tzinfo=timezone.utc)


def test_leap_day_rolls_over_and_ordinary_days_are_kept() -> None:
    assert due_date(datetime(2024, 2, 29, tzinfo=timezone.utc), 12) == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert due_date(datetime(2024, 1, 28, tzinfo=timezone.utc), 9) == datetime(2024, 10, 28, tzinfo=timezone.utc)


def test_naive_timestamps_are_treated_as_utc() -> None:
    assert due_date(datetime(2024, 1, 15), 6) == datetime(2024, 7, 15, tzinfo=timezone.utc)


def test_offset_timestamps_are_normalized_to_utc() -> None:
    local = datetime(2024, 1, 15, 1, 0, tzinfo=timezone(timedelta(hours=2)))

    assert coerce_utc(local) == datetime(2024, 1, 14, 23, 0, tzinfo=timezone.utc)
    assert coerce_utc(local).tzinfo == timezone.utc


@pytest.mark.parametrize("value", [6, 9, 12])
def test_validate_interval_accepts_supported_values(value: int) -> None:
    assert validate_interval(value) == value


@pytest.mark.parametrize("value", [0, 3, 7, 24, -6, True, "6", 6.0, None])
def test_validate_interval_rejects_other_values(value: object) -> None:
    with pytest.raises(InvalidIntervalError):
        validate_interval(value)


def test_due_date_rejects_unsupported_interval() -> None:
    with pytest.raises(ValueError):
        due_date(datetime(2024, 1, 15, tzinfo=timezone.utc), 3)
