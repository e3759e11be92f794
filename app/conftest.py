"""Shared fixtures: an in-memory store, a bound change feed and a fake clock."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("API_KEY_APP", "test-api-key")
os.environ.setdefault("SIGNING_SECRET", "test-signing-secret")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import init_db
from feed import ChangeFeed
from notifications import Notifier
from sessions.models import Course
from sessions.schemas import SessionCreate
from sessions.service import SessionService

LECTURER = "lecturer-1"
OTHER_LECTURER = "lecturer-2"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 1, 20, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def feed(session_factory):
    feed = ChangeFeed(queue_size=100)
    feed.bind(session_factory)
    return feed


@pytest.fixture()
def db(session_factory, feed):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier():
    return Notifier()


@pytest.fixture()
def course(db):
    course = Course(course_code="CS101", course_name="Algorithms", lecturer_id=LECTURER)
    db.add(course)
    db.commit()
    return course


@pytest.fixture()
def start_session(db, clock, course, notifier):
    """Factory opening a session for the fixture course."""

    def _start(duration_minutes=60, location_required=False, radius=None, lat=0.0, lon=0.0):
        payload = SessionCreate(
            class_id=course.id,
            duration_minutes=duration_minutes,
            location_required=location_required,
            classroom_latitude=lat if location_required else None,
            classroom_longitude=lon if location_required else None,
            geofence_radius_meters=radius,
        )
        return SessionService(db, now=clock, notifier=notifier).start_session(LECTURER, payload)

    return _start
