from __future__ import annotations

import hmac
import logging
from datetime import date
from functools import lru_cache
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from booking.availability import check_availability, get_available_slots
from booking.engine import (
    ReservationPolicy,
    cancel_reservation,
    create_reservation,
    get_reservation,
    update_reservation,
)
from booking.errors import RecordNotFound, ReservationValidationError
from booking.schema import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    BookingResult,
    CancelReservationRequest,
    ReservationCreateRequest,
    ReservationOut,
    ReservationUpdateRequest,
    SlotListResponse,
    SlotOut,
)
from config import get_settings
from db.session import get_db, validate_db_compatibility

settings = get_settings()

APP_NAME = settings.app_name
APP_VERSION = settings.app_version
API_KEY_HEADER = "X-API-Key"
ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

logger = logging.getLogger(__name__)


@lru_cache
def get_policy() -> ReservationPolicy:
    return ReservationPolicy.from_settings(settings)


def verify_api_key(x_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER)):
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.reservation_api_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


def is_privileged(x_admin_api_key: Optional[str] = Header(default=None, alias=ADMIN_API_KEY_HEADER)) -> bool:
    if not x_admin_api_key:
        return False
    if not hmac.compare_digest(x_admin_api_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid admin API key.")
    return True


class HealthResponse(BaseModel):
    status: Literal["ok", "error"]
    service: str
    version: str


app = FastAPI(title=APP_NAME, version=APP_VERSION)


@app.on_event("startup")
def startup_checks():
    logging.basicConfig(level=settings.log_level)
    _ = get_policy()
    validate_db_compatibility()
    logger.info("%s %s ready", APP_NAME, APP_VERSION)


@app.exception_handler(ReservationValidationError)
def handle_validation_error(_, exc: ReservationValidationError):
    return JSONResponse(
        status_code=400,
        content=BookingResult(success=False, reason=exc.message, code=exc.code, path=exc.path).model_dump(mode="json"),
    )


@app.exception_handler(RecordNotFound)
def handle_not_found(_, exc: RecordNotFound):
    return JSONResponse(status_code=404, content={"detail": exc.message, "code": exc.code})


@app.get("/health/live", response_model=HealthResponse)
def health_live():
    return HealthResponse(status="ok", service=APP_NAME, version=APP_VERSION)


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(db: Session = Depends(get_db)):
    try:
        validate_db_compatibility(db.get_bind())
    except Exception as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return HealthResponse(status="ok", service=APP_NAME, version=APP_VERSION)


@app.post("/v1/reservations", status_code=201, response_model=BookingResult, dependencies=[Depends(verify_api_key)])
def create_reservation_route(
    request: ReservationCreateRequest,
    privileged: bool = Depends(is_privileged),
    db: Session = Depends(get_db),
    policy: ReservationPolicy = Depends(get_policy),
):
    reservation = create_reservation(
        db,
        request.model_dump(exclude_none=True),
        policy=policy,
        privileged=privileged,
    )
    return BookingResult(success=True, reservation=ReservationOut.model_validate(reservation))


@app.get("/v1/reservations/{reservation_id}", response_model=ReservationOut, dependencies=[Depends(verify_api_key)])
def get_reservation_route(reservation_id: str, db: Session = Depends(get_db)):
    return ReservationOut.model_validate(get_reservation(db, reservation_id))


@app.patch("/v1/reservations/{reservation_id}", response_model=BookingResult, dependencies=[Depends(verify_api_key)])
def update_reservation_route(
    reservation_id: str,
    request: ReservationUpdateRequest,
    db: Session = Depends(get_db),
    policy: ReservationPolicy = Depends(get_policy),
):
    changes = request.model_dump(exclude_unset=True)
    reservation = update_reservation(db, reservation_id, changes, policy=policy)
    return BookingResult(success=True, reservation=ReservationOut.model_validate(reservation))


@app.post("/v1/reservations/{reservation_id}/cancel", response_model=BookingResult, dependencies=[Depends(verify_api_key)])
def cancel_reservation_route(
    reservation_id: str,
    request: CancelReservationRequest,
    db: Session = Depends(get_db),
    policy: ReservationPolicy = Depends(get_policy),
):
    reservation = cancel_reservation(db, reservation_id, request.reason, policy=policy)
    return BookingResult(success=True, reservation=ReservationOut.model_validate(reservation))


@app.get("/v1/slots", response_model=SlotListResponse, dependencies=[Depends(verify_api_key)])
def list_slots(
    resource: str,
    service: str,
    day: date = Query(alias="date"),
    guest_count: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
    policy: ReservationPolicy = Depends(get_policy),
):
    slots = get_available_slots(
        db,
        resource_id=resource,
        service_id=service,
        day=day,
        blocking_statuses=policy.status_machine.blocking_statuses,
        guest_count=guest_count,
    )
    return SlotListResponse(
        resource_id=resource,
        service_id=service,
        date=day,
        guest_count=guest_count,
        slots=[SlotOut(start=slot.start, end=slot.end) for slot in slots],
    )


@app.post("/v1/availability/check", response_model=AvailabilityCheckResponse, dependencies=[Depends(verify_api_key)])
def check_availability_route(
    request: AvailabilityCheckRequest,
    db: Session = Depends(get_db),
    policy: ReservationPolicy = Depends(get_policy),
):
    result = check_availability(
        db,
        resource_id=request.resource,
        start_time=request.start_time,
        end_time=request.end_time,
        blocking_statuses=policy.status_machine.blocking_statuses,
        guest_count=request.guest_count,
        buffer_before=request.buffer_before,
        buffer_after=request.buffer_after,
        exclude_reservation_id=request.exclude_reservation_id,
    )
    return AvailabilityCheckResponse(
        available=result.available,
        current_count=result.current_count,
        total_capacity=result.total_capacity,
        capacity_mode=result.capacity_mode,
        reason=result.reason,
    )
