"""Expansion of template recurrence descriptors into concrete shift dates."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo

from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, MO, WEEKLY, rrule

from geowork.domain.models import Recurrence, RecurrenceType

DEFAULT_HORIZON_MONTHS = 3


def calculate_schedule_dates(
    recurrence: Recurrence,
    start_date: date,
    end_date: date | None = None,
    horizon_months: int = DEFAULT_HORIZON_MONTHS,
) -> list[date]:
    """Return the ascending dates in ``[start_date, end_date]`` matching *recurrence*.

    ``end_date`` defaults to ``horizon_months`` after ``start_date``.

    * daily   - every ``interval`` days from ``start_date``.
    * weekly  - every ``interval`` weeks from ``start_date``; when ``days_of_week``
      is set, every listed weekday inside each active week (weeks start Monday).
    * monthly - ``start_date`` and then every ``interval`` months, clamping to
      the end of shorter months (Jan 31 -> Feb 28 -> Mar 28).
    """
    final = end_date or start_date + relativedelta(months=horizon_months)
    if final < start_date:
        return []

    if recurrence.type == RecurrenceType.MONTHLY:
        dates = []
        current = start_date
        while current <= final:
            dates.append(current)
            current = current + relativedelta(months=recurrence.interval)
        return dates

    kwargs = {}
    if recurrence.type == RecurrenceType.WEEKLY and recurrence.days_of_week is not None:
        if not recurrence.days_of_week:
            return []
        # 0 = Sunday in the descriptor, 0 = Monday for dateutil.
        kwargs["byweekday"] = sorted({(d - 1) % 7 for d in recurrence.days_of_week})

    rule = rrule(
        DAILY if recurrence.type == RecurrenceType.DAILY else WEEKLY,
        interval=recurrence.interval,
        dtstart=datetime.combine(start_date, time()),
        until=datetime.combine(final, time()),
        wkst=MO,
        **kwargs,
    )
    return [dt.date() for dt in rule]


def parse_time_of_day(value: str) -> time:
    hour, minute = (int(part) for part in value.split(":"))
    return time(hour, minute)


def resolve_shift_window(
    day: date, start_time: str, end_time: str, zone: tzinfo
) -> tuple[datetime, datetime]:
    """Combine *day* with HH:MM start/end times in *zone*.

    An end that is not after the start is moved to the following day, so
    "22:00"-"06:00" becomes an overnight shift.
    """
    start = datetime.combine(day, parse_time_of_day(start_time), tzinfo=zone)
    end = datetime.combine(day, parse_time_of_day(end_time), tzinfo=zone)
    if end <= start:
        end = datetime.combine(day + timedelta(days=1), end.timetz())
    return start, end
