"""Availability checks for reservation time ranges and capacity."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from booking.errors import RecordNotFound
from booking.items import ResolvedItem
from booking.models import (
    CAPACITY_PER_GUEST,
    CAPACITY_PER_RESERVATION,
    DURATION_FULL_DAY,
    Reservation,
    ReservationItem,
    Resource,
    Schedule,
    Service,
)
from booking.schedule import resolve_schedules
from booking.windows import TimeRange, buffered_window, ranges_overlap, split_into_slots

logger = logging.getLogger(__name__)

GUEST_CAPACITY_EXCEEDED = "Guest capacity exceeded"
ALL_UNITS_BOOKED = "All units are booked for this time"


@dataclass(frozen=True)
class CapacityCheck:
    available: bool
    current_count: int
    total_capacity: int
    capacity_mode: str
    reason: Optional[str] = None


def overlap_query(
    *columns: Any,
    resource_id: str,
    effective_start: datetime,
    effective_end: datetime,
    blocking_statuses: Iterable[str],
    exclude_reservation_id: Optional[str] = None,
) -> Select:
    """Blocking reservation items on ``resource_id`` that overlap the window.

    Selects whole ``ReservationItem`` rows unless ``columns`` narrows the
    projection.
    """
    conditions = [
        ReservationItem.resource_id == resource_id,
        Reservation.status.in_(list(blocking_statuses)),
        ReservationItem.start_time < effective_end,
        ReservationItem.end_time > effective_start,
    ]
    if exclude_reservation_id:
        conditions.append(Reservation.id != exclude_reservation_id)

    return (
        select(*(columns or (ReservationItem,)))
        .select_from(ReservationItem)
        .join(Reservation, ReservationItem.reservation_id == Reservation.id)
        .where(*conditions)
    )


def overlap_count(
    db: Session,
    *,
    resource_id: str,
    effective_start: datetime,
    effective_end: datetime,
    blocking_statuses: Iterable[str],
    exclude_reservation_id: Optional[str] = None,
) -> int:
    stmt = overlap_query(
        func.count(),
        resource_id=resource_id,
        effective_start=effective_start,
        effective_end=effective_end,
        blocking_statuses=blocking_statuses,
        exclude_reservation_id=exclude_reservation_id,
    )
    return int(db.scalar(stmt) or 0)


def overlapping_guest_counts(
    db: Session,
    *,
    resource_id: str,
    effective_start: datetime,
    effective_end: datetime,
    blocking_statuses: Iterable[str],
    exclude_reservation_id: Optional[str] = None,
) -> list[int]:
    stmt = overlap_query(
        ReservationItem.guest_count,
        resource_id=resource_id,
        effective_start=effective_start,
        effective_end=effective_end,
        blocking_statuses=blocking_statuses,
        exclude_reservation_id=exclude_reservation_id,
    )
    return [count if count is not None else 1 for count in db.scalars(stmt)]


def _pending_overlaps(
    pending_items: Sequence[ResolvedItem],
    *,
    resource_id: str,
    effective_start: datetime,
    effective_end: datetime,
) -> list[ResolvedItem]:
    return [
        item
        for item in pending_items
        if item.resource == resource_id
        and item.end_time is not None
        and ranges_overlap(item.start_time, item.end_time, effective_start, effective_end)
    ]


def check_availability(
    db: Session,
    *,
    resource_id: str,
    start_time: datetime,
    end_time: datetime,
    blocking_statuses: Iterable[str],
    guest_count: int = 1,
    buffer_before: int = 0,
    buffer_after: int = 0,
    exclude_reservation_id: Optional[str] = None,
    pending_items: Sequence[ResolvedItem] = (),
) -> CapacityCheck:
    """Decide whether one candidate item fits within the resource's capacity.

    ``pending_items`` are earlier items of the same request that are not yet
    written; they occupy capacity exactly like committed reservations.
    """
    resource = db.get(Resource, resource_id)
    if resource is None:
        raise RecordNotFound("resource", resource_id)

    quantity = resource.quantity or 1
    capacity_mode = resource.capacity_mode or CAPACITY_PER_RESERVATION
    effective_start, effective_end = buffered_window(start_time, end_time, buffer_before, buffer_after)
    blocking = list(blocking_statuses)

    pending = _pending_overlaps(
        pending_items,
        resource_id=resource_id,
        effective_start=effective_start,
        effective_end=effective_end,
    )

    if capacity_mode == CAPACITY_PER_GUEST:
        current_guests = sum(
            overlapping_guest_counts(
                db,
                resource_id=resource_id,
                effective_start=effective_start,
                effective_end=effective_end,
                blocking_statuses=blocking,
                exclude_reservation_id=exclude_reservation_id,
            )
        ) + sum(item.guest_count for item in pending)
        fits = current_guests + guest_count <= quantity
        return CapacityCheck(
            available=fits,
            current_count=current_guests,
            total_capacity=quantity,
            capacity_mode=capacity_mode,
            reason=None if fits else GUEST_CAPACITY_EXCEEDED,
        )

    current_count = overlap_count(
        db,
        resource_id=resource_id,
        effective_start=effective_start,
        effective_end=effective_end,
        blocking_statuses=blocking,
        exclude_reservation_id=exclude_reservation_id,
    ) + len(pending)
    fits = current_count + 1 <= quantity
    return CapacityCheck(
        available=fits,
        current_count=current_count,
        total_capacity=quantity,
        capacity_mode=capacity_mode,
        reason=None if fits else ALL_UNITS_BOOKED,
    )


def nominal_slot_minutes(service: Service, time_range: TimeRange) -> int:
    # A full-day service offers the whole range as one slot.
    if service.duration_type == DURATION_FULL_DAY:
        return int((time_range.end - time_range.start).total_seconds() // 60)
    return service.duration


def get_available_slots(
    db: Session,
    *,
    resource_id: str,
    service_id: str,
    day: date,
    blocking_statuses: Iterable[str],
    guest_count: int = 1,
) -> list[TimeRange]:
    """Start/end pairs on ``day`` that would currently pass ``check_availability``.

    The result is an advisory snapshot; booking re-runs the admission check.
    """
    service = db.get(Service, service_id)
    if service is None:
        raise RecordNotFound("service", service_id)

    schedules = db.scalars(
        select(Schedule).where(
            Schedule.resource_id == resource_id,
            Schedule.active.is_(True),
        )
    )
    time_ranges = resolve_schedules(schedules, day)
    if not time_ranges:
        return []

    blocking = list(blocking_statuses)
    available_slots: list[TimeRange] = []
    for time_range in time_ranges:
        slot_length = nominal_slot_minutes(service, time_range)
        if slot_length <= 0:
            continue
        candidates = split_into_slots(
            start_time=time_range.start,
            end_time=time_range.end,
            slot_length_minutes=slot_length,
        )
        for candidate in candidates:
            result = check_availability(
                db,
                resource_id=resource_id,
                start_time=candidate.start,
                end_time=candidate.end,
                blocking_statuses=blocking,
                guest_count=guest_count,
                buffer_before=service.buffer_time_before or 0,
                buffer_after=service.buffer_time_after or 0,
            )
            if result.available:
                available_slots.append(candidate)

    logger.debug(
        "Resolved %d available slots for resource %s on %s",
        len(available_slots),
        resource_id,
        day.isoformat(),
    )
    return available_slots
