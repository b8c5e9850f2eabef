"""SQLAlchemy models for the reservation domain."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

CAPACITY_PER_RESERVATION = "per-reservation"
CAPACITY_PER_GUEST = "per-guest"

DURATION_FIXED = "fixed"
DURATION_FLEXIBLE = "flexible"
DURATION_FULL_DAY = "full-day"

SCHEDULE_RECURRING = "recurring"
SCHEDULE_MANUAL = "manual"


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class Resource(Base):
    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    capacity_mode: Mapped[str] = mapped_column(String(32), nullable=False, default=CAPACITY_PER_RESERVATION)
    # Stored for display; all arithmetic uses one reference local time.
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    schedules: Mapped[list[Schedule]] = relationship(back_populates="resource")


class Service(Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    duration_type: Mapped[str] = mapped_column(String(32), nullable=False, default=DURATION_FIXED)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    buffer_time_before: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    buffer_time_after: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Schedule(Base):
    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    resource_id: Mapped[str] = mapped_column(String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    schedule_type: Mapped[str] = mapped_column(String(32), nullable=False, default=SCHEDULE_RECURRING)
    # [{"day": "mon", "start_time": "09:00", "end_time": "17:00"}]
    recurring_slots: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # [{"date": "2030-01-07", "start_time": "09:00", "end_time": "12:00"}]
    manual_slots: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # [{"date": "2030-12-25", "reason": "Holiday"}]
    exceptions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    resource: Mapped[Resource] = relationship(back_populates="schedules")


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    service_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("resources.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    guest_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    composite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items: Mapped[list[ReservationItem]] = relationship(
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.position",
    )


class ReservationItem(Base):
    __tablename__ = "reservation_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    reservation_id: Mapped[str] = mapped_column(String(36), ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resource_id: Mapped[str] = mapped_column(String(36), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("services.id", ondelete="SET NULL"), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    guest_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    reservation: Mapped[Reservation] = relationship(back_populates="items")
