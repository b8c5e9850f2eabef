import os

# Settings are read at import time by db.session and api_server.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RESERVATION_API_KEY", "test-api-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booking.engine import ReservationPolicy
from booking.models import Base, Resource, Schedule, Service

MONDAY = datetime(2030, 1, 7)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, future=True)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def policy():
    # Far enough before MONDAY that cancellations pass the default notice period.
    return ReservationPolicy(clock=lambda tz=None: datetime(2030, 1, 1, 8, 0))


@pytest.fixture
def make_resource(db):
    def _make(name="Chair 1", **fields):
        resource = Resource(name=name, **fields)
        db.add(resource)
        db.commit()
        return resource

    return _make


@pytest.fixture
def make_service(db):
    def _make(name="Haircut", **fields):
        fields.setdefault("duration", 60)
        service = Service(name=name, **fields)
        db.add(service)
        db.commit()
        return service

    return _make


@pytest.fixture
def make_schedule(db):
    def _make(resource, **fields):
        schedule = Schedule(resource_id=resource.id, **fields)
        db.add(schedule)
        db.commit()
        return schedule

    return _make
