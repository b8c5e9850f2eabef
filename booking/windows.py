"""Interval arithmetic shared by availability checks and slot generation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime


def add_minutes(value: datetime, minutes: int | float) -> datetime:
    return value + timedelta(minutes=minutes)


def ranges_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap test; ranges that only touch do not overlap."""
    return start_a < end_b and start_b < end_a


def buffered_window(start_time: datetime, end_time: datetime, buffer_before: int, buffer_after: int) -> tuple[datetime, datetime]:
    """Return ``(effective_start, effective_end)`` for a booking padded by its buffers."""
    return add_minutes(start_time, -buffer_before), add_minutes(end_time, buffer_after)


def hours_until(future: datetime, now: datetime | None = None) -> float:
    reference = now if now is not None else datetime.now(future.tzinfo)
    return (future - reference).total_seconds() / 3600


def split_into_slots(*, start_time: datetime, end_time: datetime, slot_length_minutes: int) -> list[TimeRange]:
    if slot_length_minutes <= 0:
        raise ValueError("slot_length_minutes must be positive.")

    slots: list[TimeRange] = []
    cursor = start_time
    slot_delta = timedelta(minutes=slot_length_minutes)
    while True:
        next_cursor = cursor + slot_delta
        if next_cursor > end_time:
            break
        slots.append(TimeRange(start=cursor, end=next_cursor))
        cursor = next_cursor
    return slots
