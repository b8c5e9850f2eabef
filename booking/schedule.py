"""Resolve declarative resource schedules into concrete time ranges."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Iterable

from booking.models import SCHEDULE_MANUAL, SCHEDULE_RECURRING, Schedule
from booking.windows import TimeRange

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def day_of_week(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def parse_clock(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def as_calendar_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def combine(day: date, clock: str) -> datetime:
    return datetime.combine(day, parse_clock(clock))


def is_exception_date(day: date, exceptions: Iterable[dict] | None) -> bool:
    return any(as_calendar_date(exc["date"]) == day for exc in exceptions or [] if exc.get("date"))


def resolve_schedule(schedule: Schedule, day: date) -> list[TimeRange]:
    """Concrete ``TimeRange`` list a schedule offers on ``day``.

    Exceptions suppress every range on their date, whatever the schedule type.
    Overlapping or duplicate slots are returned as configured.
    """
    if schedule.active is False:
        return []

    if is_exception_date(day, schedule.exceptions):
        return []

    ranges: list[TimeRange] = []

    if schedule.schedule_type == SCHEDULE_RECURRING:
        weekday = day_of_week(day)
        for slot in schedule.recurring_slots or []:
            if slot.get("day") == weekday:
                ranges.append(TimeRange(start=combine(day, slot["start_time"]), end=combine(day, slot["end_time"])))
    elif schedule.schedule_type == SCHEDULE_MANUAL:
        for slot in schedule.manual_slots or []:
            if slot.get("date") and as_calendar_date(slot["date"]) == day:
                ranges.append(TimeRange(start=combine(day, slot["start_time"]), end=combine(day, slot["end_time"])))

    return ranges


def resolve_schedules(schedules: Iterable[Schedule], day: date) -> list[TimeRange]:
    ranges: list[TimeRange] = []
    for schedule in schedules:
        ranges.extend(resolve_schedule(schedule, day))
    return ranges
