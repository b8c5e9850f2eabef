from dataclasses import replace
from datetime import datetime

import pytest
from sqlalchemy import func, select

from booking.availability import check_availability
from booking import engine as engine_module
from booking.engine import (
    ReservationHooks,
    ReservationPolicy,
    cancel_reservation,
    create_reservation,
    get_reservation,
    resource_scope,
    update_reservation,
)
from booking.errors import (
    CancellationNoticeViolation,
    CapacityExceeded,
    DuplicateIdempotencyKey,
    InvalidCreateStatus,
    InvalidTransition,
    MissingRequiredEndTime,
    RecordNotFound,
    ReservationValidationError,
    UnknownStatus,
)
from booking.models import Reservation


def at(hour, minute=0):
    return datetime(2030, 1, 7, hour, minute)


def reservation_count(db):
    return db.scalar(select(func.count()).select_from(Reservation))


def test_create_computes_fixed_end_time(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service(duration=45)

    reservation = create_reservation(
        db,
        {"resource": chair.id, "service": haircut.id, "start_time": at(9), "notes": "First visit"},
        policy=policy,
    )

    assert reservation.status == "pending"
    assert reservation.end_time == at(9, 45)
    assert reservation.composite is False
    assert [(item.resource_id, item.end_time) for item in reservation.items] == [(chair.id, at(9, 45))]
    assert get_reservation(db, reservation.id).notes == "First visit"


def test_flexible_service_requires_end_time(db, policy, make_resource, make_service):
    room = make_resource(name="Room")
    hire = make_service(name="Room hire", duration_type="flexible")

    with pytest.raises(MissingRequiredEndTime) as exc_info:
        create_reservation(db, {"resource": room.id, "service": hire.id, "start_time": at(9)}, policy=policy)
    assert exc_info.value.path == "end_time"

    reservation = create_reservation(
        db,
        {"resource": room.id, "service": hire.id, "start_time": at(9), "end_time": at(11, 30)},
        policy=policy,
    )
    assert reservation.end_time == at(11, 30)


def test_reservation_without_service_needs_end_time(db, policy, make_resource):
    chair = make_resource()
    with pytest.raises(MissingRequiredEndTime):
        create_reservation(db, {"resource": chair.id, "start_time": at(9)}, policy=policy)


def test_reservation_without_target_is_incomplete(db, policy, make_service):
    haircut = make_service()
    with pytest.raises(ReservationValidationError) as exc_info:
        create_reservation(db, {"service": haircut.id}, policy=policy)
    assert exc_info.value.code == "INCOMPLETE_RESERVATION"


def test_unknown_resource_and_service_raise_not_found(db, policy, make_resource):
    chair = make_resource()
    with pytest.raises(RecordNotFound):
        create_reservation(db, {"resource": "missing", "start_time": at(9), "end_time": at(10)}, policy=policy)
    with pytest.raises(RecordNotFound):
        create_reservation(db, {"resource": chair.id, "service": "missing", "start_time": at(9)}, policy=policy)
    with pytest.raises(RecordNotFound):
        get_reservation(db, "missing")


def test_duplicate_idempotency_key_is_rejected(db, policy, make_resource, make_service):
    room = make_resource(name="Studio", quantity=5)
    haircut = make_service()
    payload = {"resource": room.id, "service": haircut.id, "start_time": at(9), "idempotency_key": "req-1"}

    create_reservation(db, payload, policy=policy)
    with pytest.raises(DuplicateIdempotencyKey) as exc_info:
        create_reservation(db, payload, policy=policy)

    assert exc_info.value.message == "Duplicate reservation"
    assert exc_info.value.path == "idempotency_key"
    assert reservation_count(db) == 1


def test_single_unit_resource_rejects_overlapping_booking(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)

    with pytest.raises(CapacityExceeded) as exc_info:
        create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9, 30)}, policy=policy)

    assert exc_info.value.path == "start_time"
    assert exc_info.value.details["total_capacity"] == 1
    assert reservation_count(db) == 1


def test_per_guest_booking_sums_guests(db, policy, make_resource, make_service):
    hall = make_resource(name="Hall", quantity=10, capacity_mode="per-guest")
    tour = make_service(name="Tour")
    create_reservation(db, {"resource": hall.id, "service": tour.id, "start_time": at(9), "guest_count": 6}, policy=policy)

    with pytest.raises(CapacityExceeded) as exc_info:
        create_reservation(db, {"resource": hall.id, "service": tour.id, "start_time": at(9), "guest_count": 5}, policy=policy)
    assert exc_info.value.message == "Guest capacity exceeded"
    assert exc_info.value.details["current"] == 6

    create_reservation(db, {"resource": hall.id, "service": tour.id, "start_time": at(9), "guest_count": 4}, policy=policy)


def test_service_buffer_blocks_adjacent_booking(db, policy, make_resource, make_service):
    chair = make_resource()
    plain = make_service(name="Trim", duration=60)
    padded = make_service(name="Colour", duration=60, buffer_time_before=15)
    create_reservation(db, {"resource": chair.id, "service": plain.id, "start_time": at(9)}, policy=policy)

    create_reservation(db, {"resource": chair.id, "service": plain.id, "start_time": at(10)}, policy=policy)
    with pytest.raises(CapacityExceeded):
        create_reservation(db, {"resource": chair.id, "service": padded.id, "start_time": at(11)}, policy=policy)


def test_default_buffer_applies_without_service(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)
    buffered = replace(policy, default_buffer_time=30)

    with pytest.raises(CapacityExceeded):
        create_reservation(db, {"resource": chair.id, "start_time": at(10, 15), "end_time": at(11)}, policy=buffered)
    create_reservation(db, {"resource": chair.id, "start_time": at(10, 30), "end_time": at(11)}, policy=buffered)


def test_create_status_depends_on_privilege(db, policy, make_resource, make_service):
    room = make_resource(name="Studio", quantity=5)
    haircut = make_service()
    payload = {"resource": room.id, "service": haircut.id, "start_time": at(9), "status": "confirmed"}

    with pytest.raises(InvalidCreateStatus) as exc_info:
        create_reservation(db, payload, policy=policy)
    assert exc_info.value.path == "status"
    assert exc_info.value.details["allowed"] == ["pending"]

    reservation = create_reservation(db, payload, policy=policy, privileged=True)
    assert reservation.status == "confirmed"

    with pytest.raises(InvalidCreateStatus):
        create_reservation(db, {**payload, "status": "cancelled"}, policy=policy, privileged=True)


def test_composite_booking_stores_every_item(db, policy, make_resource, make_service):
    stylist = make_resource(name="Stylist")
    basin = make_resource(name="Basin")
    wash = make_service(name="Wash", duration=30)
    cut = make_service(name="Cut", duration=45)

    reservation = create_reservation(
        db,
        {
            "items": [
                {"resource": basin.id, "service": wash.id, "start_time": at(9)},
                {"resource": stylist.id, "service": cut.id, "start_time": at(9, 30)},
            ],
        },
        policy=policy,
    )

    assert reservation.composite is True
    assert reservation.start_time == at(9)
    assert reservation.end_time == at(10, 15)
    assert [item.position for item in reservation.items] == [0, 1]

    blocking = policy.status_machine.blocking_statuses
    assert not check_availability(db, resource_id=basin.id, start_time=at(9), end_time=at(9, 30), blocking_statuses=blocking).available
    assert not check_availability(db, resource_id=stylist.id, start_time=at(10), end_time=at(10, 15), blocking_statuses=blocking).available


def test_composite_booking_is_all_or_nothing(db, policy, make_resource, make_service):
    stylist = make_resource(name="Stylist")
    basin = make_resource(name="Basin")
    haircut = make_service()
    create_reservation(db, {"resource": stylist.id, "service": haircut.id, "start_time": at(9)}, policy=policy)

    with pytest.raises(CapacityExceeded) as exc_info:
        create_reservation(
            db,
            {
                "service": haircut.id,
                "start_time": at(9),
                "items": [{"resource": basin.id}, {"resource": stylist.id}],
            },
            policy=policy,
        )

    assert exc_info.value.path == "items.1.start_time"
    assert reservation_count(db) == 1


def test_items_of_one_request_count_against_each_other(db, policy, make_resource, make_service):
    chair = make_resource()
    pair = make_resource(name="Twin chairs", quantity=2)
    haircut = make_service()

    with pytest.raises(CapacityExceeded) as exc_info:
        create_reservation(
            db,
            {"service": haircut.id, "start_time": at(9), "items": [{"resource": chair.id}, {"resource": chair.id}]},
            policy=policy,
        )
    assert exc_info.value.path == "items.1.start_time"

    reservation = create_reservation(
        db,
        {"service": haircut.id, "start_time": at(9), "items": [{"resource": pair.id}, {"resource": pair.id}]},
        policy=policy,
    )
    assert len(reservation.items) == 2


def test_update_does_not_conflict_with_itself(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    reservation = create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)

    updated = update_reservation(db, reservation.id, {"start_time": at(9, 30)}, policy=policy)

    assert updated.start_time == at(9, 30)
    assert updated.end_time == at(10, 30)
    assert [item.start_time for item in updated.items] == [at(9, 30)]


def test_update_into_another_booking_is_rejected(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)
    later = create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(10)}, policy=policy)

    with pytest.raises(CapacityExceeded):
        update_reservation(db, later.id, {"start_time": at(9, 30)}, policy=policy)
    assert get_reservation(db, later.id).start_time == at(10)


def test_transitions_follow_the_status_machine(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    reservation = create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)

    with pytest.raises(InvalidTransition) as exc_info:
        update_reservation(db, reservation.id, {"status": "completed"}, policy=policy)
    assert exc_info.value.message == 'Cannot transition from "pending" to "completed"'

    update_reservation(db, reservation.id, {"status": "confirmed"}, policy=policy)
    completed = update_reservation(db, reservation.id, {"status": "completed"}, policy=policy)
    assert completed.status == "completed"

    with pytest.raises(InvalidTransition):
        update_reservation(db, reservation.id, {"status": "confirmed"}, policy=policy)


def test_unknown_stored_status_is_reported(db, policy, make_resource):
    chair = make_resource()
    reservation = create_reservation(
        db,
        {"resource": chair.id, "start_time": at(9), "end_time": at(10), "status": "archived"},
        policy=policy,
        skip_validation=True,
    )

    with pytest.raises(UnknownStatus) as exc_info:
        update_reservation(db, reservation.id, {"status": "pending"}, policy=policy)
    assert exc_info.value.message == "Unknown status: archived"


def test_cancel_within_notice_period_is_rejected(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    reservation = create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)
    same_morning = replace(policy, clock=lambda tz=None: datetime(2030, 1, 7, 0, 0))

    with pytest.raises(CancellationNoticeViolation) as exc_info:
        cancel_reservation(db, reservation.id, "Running late", policy=same_morning)
    assert "24 hours" in exc_info.value.message
    assert get_reservation(db, reservation.id).status == "pending"


def test_cancel_frees_capacity_and_keeps_reason(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    reservation = create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)

    cancelled = cancel_reservation(db, reservation.id, "Feeling unwell", policy=policy)

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Feeling unwell"
    create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)


def test_moving_to_non_blocking_status_skips_conflict_check(db, policy, make_resource):
    chair = make_resource()
    create_reservation(db, {"resource": chair.id, "start_time": at(9), "end_time": at(10)}, policy=policy)
    overlapping = create_reservation(
        db,
        {"resource": chair.id, "start_time": at(9), "end_time": at(10)},
        policy=policy,
        skip_validation=True,
    )

    assert cancel_reservation(db, overlapping.id, policy=policy).status == "cancelled"


def test_skip_validation_stores_payload_as_given(db, policy, make_resource):
    chair = make_resource()
    create_reservation(db, {"resource": chair.id, "start_time": at(9), "end_time": at(10)}, policy=policy)

    seeded = create_reservation(
        db,
        {"resource": chair.id, "start_time": at(9), "end_time": at(10), "status": "confirmed"},
        policy=policy,
        skip_validation=True,
    )
    assert seeded.status == "confirmed"
    assert reservation_count(db) == 2


def test_hooks_run_around_the_write(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    calls = []

    def tag_notes(payload):
        return {**payload, "notes": "booked online"}

    hooks = ReservationHooks(
        before_booking_create=[tag_notes],
        after_booking_create=[lambda reservation: calls.append(("created", reservation.notes))],
        after_status_change=[lambda reservation, old, new: calls.append(("status", old, new))],
        after_booking_confirm=[lambda reservation: calls.append(("confirmed", reservation.id))],
        after_booking_cancel=[lambda reservation: calls.append(("cancelled", reservation.cancellation_reason))],
    )

    reservation = create_reservation(
        db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy, hooks=hooks
    )
    update_reservation(db, reservation.id, {"status": "confirmed"}, policy=policy, hooks=hooks)
    cancel_reservation(db, reservation.id, "Double booked", policy=policy, hooks=hooks)

    assert calls == [
        ("created", "booked online"),
        ("status", "pending", "confirmed"),
        ("confirmed", reservation.id),
        ("status", "confirmed", "cancelled"),
        ("cancelled", "Double booked"),
    ]


def test_rejected_create_does_not_run_after_hooks(db, policy, make_resource, make_service):
    chair = make_resource()
    haircut = make_service()
    created = []
    hooks = ReservationHooks(after_booking_create=[created.append])
    create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy)

    with pytest.raises(CapacityExceeded):
        create_reservation(db, {"resource": chair.id, "service": haircut.id, "start_time": at(9)}, policy=policy, hooks=hooks)
    assert created == []


def test_policy_rejects_unknown_cancelled_status():
    with pytest.raises(ValueError):
        ReservationPolicy(cancelled_status="void")


def test_moving_composite_start_shifts_every_item(db, policy, make_resource, make_service):
    stylist = make_resource(name="Stylist")
    basin = make_resource(name="Basin")
    wash = make_service(name="Wash", duration=30)
    cut = make_service(name="Cut", duration=45)
    reservation = create_reservation(
        db,
        {
            "items": [
                {"resource": basin.id, "service": wash.id, "start_time": at(9)},
                {"resource": stylist.id, "service": cut.id, "start_time": at(9, 30)},
            ],
        },
        policy=policy,
    )

    moved = update_reservation(db, reservation.id, {"start_time": at(13)}, policy=policy)

    assert moved.start_time == at(13)
    assert moved.end_time == at(14, 15)
    assert [(item.start_time, item.end_time) for item in moved.items] == [
        (at(13), at(13, 30)),
        (at(13, 30), at(14, 15)),
    ]
    blocking = policy.status_machine.blocking_statuses
    assert check_availability(db, resource_id=basin.id, start_time=at(9), end_time=at(9, 30), blocking_statuses=blocking).available


def test_composite_end_time_change_requires_items(db, policy, make_resource, make_service):
    stylist = make_resource(name="Stylist")
    basin = make_resource(name="Basin")
    haircut = make_service()
    reservation = create_reservation(
        db,
        {"service": haircut.id, "start_time": at(9), "items": [{"resource": basin.id}, {"resource": stylist.id}]},
        policy=policy,
    )

    with pytest.raises(ReservationValidationError) as exc_info:
        update_reservation(db, reservation.id, {"end_time": at(12)}, policy=policy)

    assert exc_info.value.code == "ITEMS_REQUIRED"
    assert exc_info.value.path == "items"
    assert [item.start_time for item in get_reservation(db, reservation.id).items] == [at(9), at(9)]


def test_existing_booking_buffers_do_not_widen_new_candidates(db, policy, make_resource, make_service):
    chair = make_resource()
    padded = make_service(name="Colour", duration=60, buffer_time_after=15)
    plain = make_service(name="Trim", duration=60)
    create_reservation(db, {"resource": chair.id, "service": padded.id, "start_time": at(9)}, policy=policy)

    following = create_reservation(db, {"resource": chair.id, "service": plain.id, "start_time": at(10)}, policy=policy)

    assert following.start_time == at(10)


def test_resource_scope_reuses_locks_and_ignores_unknown_ids(db, make_resource):
    chair = make_resource()

    with resource_scope(db, [chair.id]):
        pass
    first_lock = engine_module._resource_locks[chair.id]
    with resource_scope(db, [chair.id, chair.id]):
        assert first_lock.locked()
    assert engine_module._resource_locks[chair.id] is first_lock
    assert not first_lock.locked()

    with pytest.raises(RecordNotFound):
        with resource_scope(db, [chair.id, "missing"]):
            pass
    assert "missing" not in engine_module._resource_locks
    assert not first_lock.locked()
