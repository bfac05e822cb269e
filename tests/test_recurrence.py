"""Tests for recurrence expansion and shift-window resolution."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from dateutil import tz

from geowork.domain.models import Recurrence, RecurrenceType
from geowork.services.recurrence import calculate_schedule_dates, resolve_shift_window

_MONDAY = date(2026, 3, 2)


def _weekly(days=None, interval=1) -> Recurrence:
    return Recurrence(type=RecurrenceType.WEEKLY, interval=interval, days_of_week=days)


# ---------------------------------------------------------------------------
# calculate_schedule_dates
# ---------------------------------------------------------------------------


def test_weekly_monday_wednesday_over_two_weeks():
    dates = calculate_schedule_dates(_weekly([1, 3]), _MONDAY, _MONDAY + timedelta(days=13))
    assert dates == [
        date(2026, 3, 2),
        date(2026, 3, 4),
        date(2026, 3, 9),
        date(2026, 3, 11),
    ]


def test_weekly_days_before_start_in_first_week_are_skipped():
    wednesday = date(2026, 3, 4)
    dates = calculate_schedule_dates(_weekly([1, 3]), wednesday, date(2026, 3, 10))
    assert dates == [date(2026, 3, 4), date(2026, 3, 9)]


def test_weekly_sunday_is_day_zero():
    dates = calculate_schedule_dates(_weekly([0]), _MONDAY, date(2026, 3, 15))
    assert dates == [date(2026, 3, 8), date(2026, 3, 15)]


def test_biweekly_with_days_skips_alternate_weeks():
    dates = calculate_schedule_dates(_weekly([2], interval=2), _MONDAY, date(2026, 3, 31))
    assert dates == [date(2026, 3, 3), date(2026, 3, 17), date(2026, 3, 31)]


def test_weekly_without_days_steps_from_start():
    dates = calculate_schedule_dates(_weekly(interval=2), _MONDAY, date(2026, 3, 31))
    assert dates == [date(2026, 3, 2), date(2026, 3, 16), date(2026, 3, 30)]


def test_weekly_with_empty_day_list_yields_nothing():
    assert calculate_schedule_dates(_weekly([]), _MONDAY, date(2026, 3, 31)) == []


def test_daily_interval():
    recurrence = Recurrence(type=RecurrenceType.DAILY, interval=3)
    dates = calculate_schedule_dates(recurrence, date(2026, 3, 1), date(2026, 3, 10))
    assert dates == [date(2026, 3, 1), date(2026, 3, 4), date(2026, 3, 7), date(2026, 3, 10)]


def test_monthly_clamps_to_month_end():
    recurrence = Recurrence(type=RecurrenceType.MONTHLY)
    dates = calculate_schedule_dates(recurrence, date(2026, 1, 31), date(2026, 4, 30))
    assert dates == [
        date(2026, 1, 31),
        date(2026, 2, 28),
        date(2026, 3, 28),
        date(2026, 4, 28),
    ]


def test_monthly_interval():
    recurrence = Recurrence(type=RecurrenceType.MONTHLY, interval=2)
    dates = calculate_schedule_dates(recurrence, date(2026, 1, 15), date(2026, 6, 30))
    assert dates == [date(2026, 1, 15), date(2026, 3, 15), date(2026, 5, 15)]


def test_default_horizon_is_three_months():
    recurrence = Recurrence(type=RecurrenceType.DAILY)
    dates = calculate_schedule_dates(recurrence, date(2026, 3, 1))
    assert dates[0] == date(2026, 3, 1)
    assert dates[-1] == date(2026, 6, 1)
    assert len(dates) == 93


def test_horizon_can_be_configured():
    recurrence = Recurrence(type=RecurrenceType.MONTHLY)
    dates = calculate_schedule_dates(recurrence, date(2026, 3, 1), horizon_months=1)
    assert dates == [date(2026, 3, 1), date(2026, 4, 1)]


def test_single_day_window():
    recurrence = Recurrence(type=RecurrenceType.DAILY)
    assert calculate_schedule_dates(recurrence, _MONDAY, _MONDAY) == [_MONDAY]


def test_end_before_start_yields_nothing():
    recurrence = Recurrence(type=RecurrenceType.DAILY)
    assert calculate_schedule_dates(recurrence, _MONDAY, date(2026, 3, 1)) == []


# ---------------------------------------------------------------------------
# resolve_shift_window
# ---------------------------------------------------------------------------


def test_same_day_window():
    start, end = resolve_shift_window(_MONDAY, "08:00", "16:30", timezone.utc)
    assert start == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 2, 16, 30, tzinfo=timezone.utc)


def test_overnight_window_rolls_end_to_next_day():
    start, end = resolve_shift_window(_MONDAY, "22:00", "06:00", timezone.utc)
    assert start == datetime(2026, 3, 2, 22, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc)


def test_equal_times_make_a_full_day_shift():
    start, end = resolve_shift_window(_MONDAY, "07:00", "07:00", timezone.utc)
    assert end - start == timedelta(hours=24)


def test_window_is_local_to_zone():
    zone = tz.gettz("Europe/Berlin")
    start, _ = resolve_shift_window(_MONDAY, "09:00", "17:00", zone)
    assert start.astimezone(timezone.utc) == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
