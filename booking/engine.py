"""Reservation lifecycle: validation pipeline, serialized writes and hooks."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking.availability import check_availability
from booking.errors import (
    CancellationNoticeViolation,
    CapacityExceeded,
    DuplicateIdempotencyKey,
    InvalidCreateStatus,
    InvalidTransition,
    MissingRequiredEndTime,
    RecordNotFound,
    ReservationError,
    ReservationValidationError,
    UnknownStatus,
)
from booking.items import ResolvedItem, extract_id, parse_datetime, resolve_reservation_items
from booking.models import Reservation, ReservationItem, Resource, Service
from booking.rules import RuleEngine
from booking.status import DEFAULT_STATUS_MACHINE, StatusMachine, allowed_create_statuses, validate_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationPolicy:
    status_machine: StatusMachine = DEFAULT_STATUS_MACHINE
    cancellation_notice_period: int = 24
    default_buffer_time: int = 0
    cancelled_status: str = "cancelled"
    confirmed_status: str = "confirmed"
    clock: Callable[..., datetime] = datetime.now

    def __post_init__(self) -> None:
        if self.cancelled_status not in self.status_machine.statuses:
            raise ValueError(f"cancelled_status {self.cancelled_status!r} is not a configured status.")

    @classmethod
    def from_settings(cls, settings: Any) -> ReservationPolicy:
        machine = DEFAULT_STATUS_MACHINE
        if settings.status_machine:
            machine = StatusMachine.from_mapping(settings.status_machine)
        return cls(
            status_machine=machine,
            cancellation_notice_period=settings.cancellation_notice_period,
            default_buffer_time=settings.default_buffer_time,
        )


@dataclass
class ReservationHooks:
    """Callbacks around the write.

    ``before_booking_create`` hooks may return a replacement payload. The
    ``after_*`` hooks run in order once the write has committed.
    """

    before_booking_create: list[Callable[[dict], Optional[dict]]] = field(default_factory=list)
    after_booking_create: list[Callable[[Reservation], None]] = field(default_factory=list)
    after_status_change: list[Callable[[Reservation, str, str], None]] = field(default_factory=list)
    after_booking_confirm: list[Callable[[Reservation], None]] = field(default_factory=list)
    after_booking_cancel: list[Callable[[Reservation], None]] = field(default_factory=list)


# One lock per existing resource id. Ids are checked against the resources
# table before a lock is created and entries are never removed, so the
# registry is bounded by the number of resources.
_resource_locks: dict[str, threading.Lock] = {}
_resource_locks_guard = threading.Lock()


@contextmanager
def resource_scope(db: Session, resource_ids: Iterable[str]) -> Iterator[None]:
    """Serialize admission checks and writes per resource.

    Holds an in-process lock per resource id and row-locks the resources for
    the rest of the transaction. Ids are taken in sorted order so overlapping
    composite bookings cannot deadlock.
    """
    ordered = sorted(set(resource_ids))
    if ordered:
        found = set(db.scalars(select(Resource.id).where(Resource.id.in_(ordered))))
        for resource_id in ordered:
            if resource_id not in found:
                raise RecordNotFound("resource", resource_id)

    with _resource_locks_guard:
        locks = [_resource_locks.setdefault(resource_id, threading.Lock()) for resource_id in ordered]

    for lock in locks:
        lock.acquire()
    try:
        if ordered:
            db.execute(select(Resource.id).where(Resource.id.in_(ordered)).order_by(Resource.id).with_for_update())
        yield
    finally:
        for lock in reversed(locks):
            lock.release()


def _item_path(index: int, name: str, composite: bool) -> str:
    return f"items.{index}.{name}" if composite else name


def _load_services(db: Session, items: list[ResolvedItem]) -> dict[str, Service]:
    services: dict[str, Service] = {}
    for item in items:
        if item.service and item.service not in services:
            service = db.get(Service, item.service)
            if service is None:
                raise RecordNotFound("service", item.service)
            services[item.service] = service
    return services


def _resolve_end_times(items: list[ResolvedItem], services: Mapping[str, Service], *, composite: bool) -> list[ResolvedItem]:
    resolved: list[ResolvedItem] = []
    for index, item in enumerate(items):
        service = services.get(item.service) if item.service else None
        path = _item_path(index, "end_time", composite)
        if service is None:
            if item.end_time is None:
                raise MissingRequiredEndTime("An end time is required when no service is given.", path=path)
            resolved.append(item)
            continue
        try:
            result = RuleEngine.compute_end_time(service.duration_type, service.duration, item.start_time, item.end_time)
        except MissingRequiredEndTime as exc:
            exc.path = path
            raise
        resolved.append(item.with_end_time(result.end_time))
    return resolved


def _buffer_times(db: Session, service_id: Optional[str], policy: ReservationPolicy) -> tuple[int, int]:
    default = policy.default_buffer_time
    if not service_id:
        return default, default
    try:
        service = db.get(Service, service_id)
    except SQLAlchemyError:
        logger.warning("Buffer lookup failed for service %s; using default buffer of %d minutes", service_id, default, exc_info=True)
        return default, default
    if service is None:
        logger.warning("Service %s not found for buffer lookup; using default buffer of %d minutes", service_id, default)
        return default, default
    before = service.buffer_time_before if service.buffer_time_before is not None else default
    after = service.buffer_time_after if service.buffer_time_after is not None else default
    return before, after


def _validate_conflicts(
    db: Session,
    items: list[ResolvedItem],
    policy: ReservationPolicy,
    *,
    composite: bool,
    exclude_reservation_id: Optional[str] = None,
) -> None:
    accepted: list[ResolvedItem] = []
    for index, item in enumerate(items):
        buffer_before, buffer_after = _buffer_times(db, item.service, policy)
        result = check_availability(
            db,
            resource_id=item.resource,
            start_time=item.start_time,
            end_time=item.end_time,
            blocking_statuses=policy.status_machine.blocking_statuses,
            guest_count=item.guest_count,
            buffer_before=buffer_before,
            buffer_after=buffer_after,
            exclude_reservation_id=exclude_reservation_id,
            pending_items=accepted,
        )
        if not result.available:
            raise CapacityExceeded(
                result.reason,
                resource_id=item.resource,
                current=result.current_count,
                total=result.total_capacity,
                path=_item_path(index, "start_time", composite),
            )
        accepted.append(item)


def _validate_create_status(status: str, policy: ReservationPolicy, *, privileged: bool) -> None:
    check = RuleEngine.check_create_status(status, policy.status_machine, privileged=privileged)
    if not check.allowed:
        raise InvalidCreateStatus(
            check.reason,
            status=status,
            allowed=allowed_create_statuses(policy.status_machine, privileged=privileged),
        )


def _validate_status_change(previous_status: str, new_status: str, policy: ReservationPolicy) -> None:
    if previous_status == new_status:
        return
    result = validate_transition(previous_status, new_status, policy.status_machine)
    if result.valid:
        return
    if previous_status not in policy.status_machine.transitions:
        raise UnknownStatus(result.reason, status=previous_status)
    raise InvalidTransition(result.reason, from_status=previous_status, to_status=new_status)


def _validate_cancellation(previous_status: str, new_status: str, start_time: datetime, policy: ReservationPolicy) -> None:
    if new_status != policy.cancelled_status or previous_status == policy.cancelled_status:
        return
    check = RuleEngine.check_cancellation_notice(
        start_time,
        policy.cancellation_notice_period,
        now=policy.clock(start_time.tzinfo),
    )
    if not check.allowed:
        raise CancellationNoticeViolation(check.reason, period=policy.cancellation_notice_period)


def _apply(reservation: Reservation, data: Mapping[str, Any], items: list[ResolvedItem], *, status: str, composite: bool, policy: ReservationPolicy) -> None:
    first = items[0] if items else None
    ends = [item.end_time for item in items if item.end_time is not None]

    reservation.service_id = extract_id(data.get("service")) or (first.service if first else None)
    reservation.resource_id = extract_id(data.get("resource")) or (first.resource if first else None)
    reservation.customer_id = extract_id(data.get("customer"))
    reservation.start_time = min(item.start_time for item in items) if items else parse_datetime(data.get("start_time"))
    reservation.end_time = max(ends) if ends else parse_datetime(data.get("end_time"))
    reservation.guest_count = int(data.get("guest_count") or 1)
    reservation.status = status
    reservation.cancellation_reason = data.get("cancellation_reason") if status == policy.cancelled_status else None
    reservation.idempotency_key = data.get("idempotency_key") or None
    reservation.notes = data.get("notes")
    reservation.composite = composite
    reservation.items = [
        ReservationItem(
            position=position,
            resource_id=item.resource,
            service_id=item.service,
            start_time=item.start_time,
            end_time=item.end_time,
            guest_count=item.guest_count,
        )
        for position, item in enumerate(items)
    ]


def _reservation_data(reservation: Reservation) -> dict[str, Any]:
    data: dict[str, Any] = {
        "resource": reservation.resource_id,
        "service": reservation.service_id,
        "customer": reservation.customer_id,
        "start_time": reservation.start_time,
        "end_time": reservation.end_time,
        "guest_count": reservation.guest_count,
        "status": reservation.status,
        "cancellation_reason": reservation.cancellation_reason,
        "idempotency_key": reservation.idempotency_key,
        "notes": reservation.notes,
    }
    if reservation.composite:
        data["items"] = [
            {
                "resource": item.resource_id,
                "service": item.service_id,
                "start_time": item.start_time,
                "end_time": item.end_time,
                "guest_count": item.guest_count,
            }
            for item in reservation.items
        ]
    return data


def _idempotency_key_taken(db: Session, key: str) -> bool:
    stmt = select(func.count()).select_from(Reservation).where(Reservation.idempotency_key == key)
    return int(db.scalar(stmt) or 0) > 0


def _move_composite_items(reservation: Reservation, merged: dict[str, Any], changes: Mapping[str, Any]) -> None:
    """Carry a top-level time change on a composite reservation to its items.

    A new ``start_time`` shifts every item by the same offset. The end of a
    composite booking is derived from its items, so changing it needs ``items``.
    """
    if "end_time" in changes:
        raise ReservationValidationError(
            "Send the items to change the end time of a composite reservation.",
            code="ITEMS_REQUIRED",
            path="items",
        )
    if "start_time" not in changes:
        return

    new_start = parse_datetime(changes["start_time"])
    if new_start is None:
        raise ReservationValidationError(
            "A composite reservation needs a start time.",
            code="INCOMPLETE_RESERVATION",
            path="start_time",
        )
    offset = new_start - reservation.start_time
    merged["items"] = [
        {
            **item,
            "start_time": item["start_time"] + offset,
            "end_time": item["end_time"] + offset if item["end_time"] is not None else None,
        }
        for item in merged["items"]
    ]


def _require_items(items: list[ResolvedItem]) -> None:
    if not items:
        raise ReservationValidationError(
            "A reservation needs a resource and a start time.",
            code="INCOMPLETE_RESERVATION",
            path="resource",
        )


def _run_after_hooks(
    hooks: ReservationHooks,
    reservation: Reservation,
    policy: ReservationPolicy,
    *,
    created: bool,
    previous_status: Optional[str] = None,
) -> None:
    if created:
        for hook in hooks.after_booking_create:
            hook(reservation)
        return

    if previous_status is None or previous_status == reservation.status:
        return

    for hook in hooks.after_status_change:
        hook(reservation, previous_status, reservation.status)
    if reservation.status == policy.confirmed_status:
        for hook in hooks.after_booking_confirm:
            hook(reservation)
    if reservation.status == policy.cancelled_status:
        for hook in hooks.after_booking_cancel:
            hook(reservation)


def get_reservation(db: Session, reservation_id: str) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise RecordNotFound("reservation", reservation_id)
    return reservation


def create_reservation(
    db: Session,
    data: Mapping[str, Any],
    *,
    policy: Optional[ReservationPolicy] = None,
    privileged: bool = False,
    skip_validation: bool = False,
    hooks: Optional[ReservationHooks] = None,
) -> Reservation:
    """Validate and insert a reservation, all items or none.

    ``skip_validation`` is the administrative escape hatch for migrations and
    seeding: the payload is stored as given, without idempotency, duration,
    conflict or status checks.
    """
    policy = policy or ReservationPolicy()
    hooks = hooks or ReservationHooks()
    payload = dict(data)

    try:
        if not skip_validation:
            for hook in hooks.before_booking_create:
                payload = hook(payload) or payload

        status = payload.get("status") or policy.status_machine.default_status
        composite = bool(payload.get("items"))
        items = resolve_reservation_items(payload)
        reservation = Reservation()

        if skip_validation:
            _apply(reservation, payload, items, status=status, composite=composite, policy=policy)
            db.add(reservation)
            db.commit()
            logger.info("Stored reservation %s without validation", reservation.id)
        else:
            key = payload.get("idempotency_key")
            if key and _idempotency_key_taken(db, key):
                raise DuplicateIdempotencyKey(key)

            _require_items(items)
            items = _resolve_end_times(items, _load_services(db, items), composite=composite)

            with resource_scope(db, (item.resource for item in items)):
                _validate_conflicts(db, items, policy, composite=composite)
                _validate_create_status(status, policy, privileged=privileged)
                _apply(reservation, payload, items, status=status, composite=composite, policy=policy)
                db.add(reservation)
                db.commit()
            logger.info(
                "Created reservation %s (%s) with %d item(s)",
                reservation.id,
                reservation.status,
                len(items),
            )
    except ReservationError as exc:
        db.rollback()
        logger.warning("Reservation create rejected: %s [%s]", exc.message, exc.code)
        raise
    except IntegrityError as exc:
        db.rollback()
        key = payload.get("idempotency_key")
        if key and _idempotency_key_taken(db, key):
            logger.warning("Reservation create rejected: duplicate idempotency key %s", key)
            raise DuplicateIdempotencyKey(key) from exc
        raise
    except Exception:
        db.rollback()
        raise

    _run_after_hooks(hooks, reservation, policy, created=True)
    return reservation


def update_reservation(
    db: Session,
    reservation_id: str,
    changes: Mapping[str, Any],
    *,
    policy: Optional[ReservationPolicy] = None,
    skip_validation: bool = False,
    hooks: Optional[ReservationHooks] = None,
) -> Reservation:
    """Apply ``changes`` to a reservation through the validation pipeline.

    Conflicts are re-checked (excluding the reservation itself) whenever the
    resulting status still occupies capacity.
    """
    policy = policy or ReservationPolicy()
    hooks = hooks or ReservationHooks()

    try:
        reservation = get_reservation(db, reservation_id)
        previous_status = reservation.status
        merged = _reservation_data(reservation)
        merged.update(changes)
        if "items" in changes and not changes["items"]:
            merged.pop("items", None)
        elif reservation.composite and "items" not in changes:
            _move_composite_items(reservation, merged, changes)

        new_status = merged.get("status") or previous_status
        composite = bool(merged.get("items"))
        items = resolve_reservation_items(merged)

        if skip_validation:
            _apply(reservation, merged, items, status=new_status, composite=composite, policy=policy)
            db.commit()
            logger.info("Updated reservation %s without validation", reservation.id)
        else:
            _require_items(items)
            items = _resolve_end_times(items, _load_services(db, items), composite=composite)

            with resource_scope(db, (item.resource for item in items)):
                if policy.status_machine.is_blocking(new_status):
                    _validate_conflicts(db, items, policy, composite=composite, exclude_reservation_id=reservation.id)
                _validate_status_change(previous_status, new_status, policy)
                _validate_cancellation(previous_status, new_status, min(item.start_time for item in items), policy)
                _apply(reservation, merged, items, status=new_status, composite=composite, policy=policy)
                db.commit()
            logger.info("Updated reservation %s (%s -> %s)", reservation.id, previous_status, new_status)
    except ReservationError as exc:
        db.rollback()
        logger.warning("Reservation update rejected for %s: %s [%s]", reservation_id, exc.message, exc.code)
        raise
    except Exception:
        db.rollback()
        raise

    _run_after_hooks(hooks, reservation, policy, created=False, previous_status=previous_status)
    return reservation


def cancel_reservation(
    db: Session,
    reservation_id: str,
    reason: Optional[str] = None,
    *,
    policy: Optional[ReservationPolicy] = None,
    skip_validation: bool = False,
    hooks: Optional[ReservationHooks] = None,
) -> Reservation:
    policy = policy or ReservationPolicy()
    return update_reservation(
        db,
        reservation_id,
        {"status": policy.cancelled_status, "cancellation_reason": reason},
        policy=policy,
        skip_validation=skip_validation,
        hooks=hooks,
    )
