"""Unit tests for the attendance accept path."""
import math

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from attendance.models import AttendanceRecord
from attendance.schemas import ScanRequest
from attendance.service import FraudGuard
from errors import (
    DuplicateScan,
    LocationRequired,
    OutOfRange,
    SessionClosed,
    ValidationTransportFailure,
)
from geo import EARTH_RADIUS_M
from security_hmac import device_fingerprint
from sessions.service import SessionService

CLASS_LAT, CLASS_LON = 36.8065, 10.1815
PHONE = device_fingerprint("phone-a")


def claim_at(code, meters_north=None):
    if meters_north is None:
        return ScanRequest(session_code=code)
    lat = CLASS_LAT + meters_north / (EARTH_RADIUS_M * math.pi / 180)
    return ScanRequest(session_code=code, latitude=lat, longitude=CLASS_LON)


def attendee_count(db, session_id):
    return db.query(AttendanceRecord).filter(AttendanceRecord.session_id == session_id).count()


@pytest.fixture()
def geo_session(start_session):
    return start_session(location_required=True, radius=100, lat=CLASS_LAT, lon=CLASS_LON)


class TestScanSchema:
    """Test cases for scan payload validation."""

    def test_latitude_without_longitude_rejected(self):
        with pytest.raises(ValidationError):
            ScanRequest(session_code="abc", latitude=1.0)

    def test_location_tuple(self):
        assert ScanRequest(session_code="abc", latitude=1.0, longitude=2.0).location == (1.0, 2.0)
        assert ScanRequest(session_code="abc").location is None


class TestFraudGuard:
    """Test cases for FraudGuard.submit_scan."""

    def test_out_of_range_then_accepted_after_moving(self, db, clock, geo_session):
        guard = FraudGuard(db, now=clock)
        before = attendee_count(db, geo_session.id)

        with pytest.raises(OutOfRange) as exc:
            guard.submit_scan("student-1", claim_at(geo_session.session_code, 150), PHONE)
        assert exc.value.status_code == 422
        assert exc.value.distance_m == pytest.approx(150, abs=1)
        assert exc.value.radius_m == 100
        assert exc.value.detail["code"] == "out_of_range"
        assert attendee_count(db, geo_session.id) == before

        clock.advance(30)
        record = guard.submit_scan("student-1", claim_at(geo_session.session_code, 80), PHONE)
        assert record.distance_meters == pytest.approx(80, abs=1)
        assert record.device_fingerprint == PHONE
        assert attendee_count(db, geo_session.id) == before + 1

    def test_gps_accuracy_kept_with_location(self, db, clock, geo_session, start_session):
        claim = claim_at(geo_session.session_code, 40).model_copy(update={"accuracy": 8.0})
        record = FraudGuard(db, now=clock).submit_scan("student-1", claim, PHONE)
        assert record.accuracy_meters == 8.0

        plain = start_session()
        no_location = ScanRequest(session_code=plain.session_code, accuracy=8.0)
        record = FraudGuard(db, now=clock).submit_scan("student-2", no_location, PHONE)
        assert record.accuracy_meters is None

    def test_duplicate_scan(self, db, clock, start_session):
        session = start_session()
        guard = FraudGuard(db, now=clock)
        guard.submit_scan("student-1", claim_at(session.session_code), PHONE)

        with pytest.raises(DuplicateScan) as exc:
            guard.submit_scan("student-1", claim_at(session.session_code), device_fingerprint("phone-b"))
        assert exc.value.status_code == 409
        assert attendee_count(db, session.id) == 1

    def test_concurrent_duplicate_caught_by_unique_constraint(self, db, clock, start_session, monkeypatch):
        """Test the race where two submissions both pass the duplicate pre-check."""
        session = start_session()
        guard = FraudGuard(db, now=clock)
        guard.submit_scan("student-1", claim_at(session.session_code), PHONE)

        monkeypatch.setattr(guard, "_check_duplicate", lambda session_id, student_id: None)
        with pytest.raises(DuplicateScan):
            guard.submit_scan("student-1", claim_at(session.session_code), PHONE)
        assert attendee_count(db, session.id) == 1

    def test_ended_session_rejected(self, db, clock, start_session):
        session = start_session()
        SessionService(db, now=clock).end_session(session.id, "lecturer-1")
        with pytest.raises(SessionClosed) as exc:
            FraudGuard(db, now=clock).submit_scan("student-1", claim_at(session.session_code), PHONE)
        assert exc.value.status_code == 410
        assert attendee_count(db, session.id) == 0

    def test_scan_after_end_time_rejected_before_expiry_is_recorded(self, db, clock, start_session):
        session = start_session(duration_minutes=10)
        clock.advance(10 * 60)
        with pytest.raises(SessionClosed):
            FraudGuard(db, now=clock).submit_scan("student-1", claim_at(session.session_code), PHONE)

    def test_scan_one_second_before_end_accepted(self, db, clock, start_session):
        session = start_session(duration_minutes=10)
        clock.advance(10 * 60 - 1)
        record = FraudGuard(db, now=clock).submit_scan("student-1", claim_at(session.session_code), PHONE)
        assert record.session_id == session.id

    def test_closed_checked_before_duplicate(self, db, clock, start_session):
        session = start_session()
        guard = FraudGuard(db, now=clock)
        guard.submit_scan("student-1", claim_at(session.session_code), PHONE)
        SessionService(db, now=clock).end_session(session.id, "lecturer-1")
        with pytest.raises(SessionClosed):
            guard.submit_scan("student-1", claim_at(session.session_code), PHONE)

    def test_location_required(self, db, clock, geo_session):
        with pytest.raises(LocationRequired) as exc:
            FraudGuard(db, now=clock).submit_scan("student-1", claim_at(geo_session.session_code), PHONE)
        assert exc.value.status_code == 422

    def test_boundary_distance_accepted(self, db, clock, geo_session):
        record = FraudGuard(db, now=clock).submit_scan(
            "student-1", claim_at(geo_session.session_code, 99.5), PHONE
        )
        assert record.distance_meters <= 100

    def test_unknown_code(self, db, clock, start_session):
        start_session()
        with pytest.raises(HTTPException) as exc:
            FraudGuard(db, now=clock).submit_scan("student-1", claim_at("not-a-code"), PHONE)
        assert exc.value.status_code == 404

    def test_store_failure_is_retryable(self, db, clock, start_session, monkeypatch):
        session = start_session()

        def broken_commit():
            raise OperationalError("INSERT", {}, Exception("connection lost"))

        monkeypatch.setattr(db, "commit", broken_commit)
        with pytest.raises(ValidationTransportFailure) as exc:
            FraudGuard(db, now=clock).submit_scan("student-1", claim_at(session.session_code), PHONE)
        assert exc.value.status_code == 503
        monkeypatch.undo()
        assert attendee_count(db, session.id) == 0


class TestDeviceAnomalies:
    """Test cases for shared-device reporting."""

    def test_shared_device_is_reported_not_blocked(self, db, clock, start_session):
        first = start_session()
        second = start_session()
        guard = FraudGuard(db, now=clock)

        guard.submit_scan("student-1", claim_at(first.session_code), PHONE)
        guard.submit_scan("student-2", claim_at(first.session_code), PHONE)
        guard.submit_scan("student-3", claim_at(second.session_code), PHONE)
        guard.submit_scan("student-4", claim_at(second.session_code), device_fingerprint("phone-b"))

        anomalies = guard.device_anomalies("lecturer-1")
        assert anomalies == [
            {
                "device_fingerprint": PHONE,
                "student_ids": ["student-1", "student-2", "student-3"],
                "session_count": 2,
            }
        ]

    def test_other_lecturers_see_nothing(self, db, clock, start_session):
        session = start_session()
        guard = FraudGuard(db, now=clock)
        guard.submit_scan("student-1", claim_at(session.session_code), PHONE)
        guard.submit_scan("student-2", claim_at(session.session_code), PHONE)
        assert guard.device_anomalies("lecturer-2") == []
