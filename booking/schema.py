"""Pydantic schemas for reservation and availability flows."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ReservationItemIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    resource: Optional[str] = Field(default=None, min_length=1)
    service: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    guest_count: Optional[int] = Field(default=None, ge=1)


class ReservationCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    service: Optional[str] = None
    resource: Optional[str] = None
    customer: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[str] = None
    guest_count: int = Field(default=1, ge=1)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)
    notes: Optional[str] = None
    items: list[ReservationItemIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_target(self):
        if not self.items and (not self.resource or self.start_time is None):
            raise ValueError("resource and start_time are required unless items are given.")
        return self


class ReservationUpdateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    service: Optional[str] = None
    resource: Optional[str] = None
    customer: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[str] = None
    guest_count: Optional[int] = Field(default=None, ge=1)
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[list[ReservationItemIn]] = None


class CancelReservationRequest(BaseModel):
    reason: Optional[str] = None


class ReservationItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resource_id: str
    service_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    guest_count: int


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    service_id: Optional[str] = None
    resource_id: Optional[str] = None
    customer_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: str
    guest_count: int
    cancellation_reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    notes: Optional[str] = None
    items: list[ReservationItemOut] = Field(default_factory=list)


class BookingResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    path: Optional[str] = None
    reservation: Optional[ReservationOut] = None

    @field_validator("reason")
    @classmethod
    def normalize_reason(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class AvailabilityCheckRequest(BaseModel):
    resource: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    guest_count: int = Field(default=1, ge=1)
    buffer_before: int = Field(default=0, ge=0)
    buffer_after: int = Field(default=0, ge=0)
    exclude_reservation_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be earlier than end_time.")
        return self


class AvailabilityCheckResponse(BaseModel):
    available: bool
    current_count: int
    total_capacity: int
    capacity_mode: str
    reason: Optional[str] = None


class SlotOut(BaseModel):
    start: datetime
    end: datetime


class SlotListResponse(BaseModel):
    resource_id: str
    service_id: str
    date: date
    guest_count: int
    slots: list[SlotOut]
