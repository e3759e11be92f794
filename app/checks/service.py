"""Presence checks: short challenges issued by the lecturer mid-session.

A lapsed check triggers nothing by itself; the lecturer reads the final
tally. Late responses are rejected against the store clock.
"""
import logging
from datetime import timedelta
from typing import Callable, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import metrics
from attendance.models import AttendanceRecord
from checks.models import SessionCheck, SessionCheckResponse
from countdown import as_utc, seconds_remaining, utcnow
from db import commit_or_fail
from errors import (
    CheckExpired,
    DuplicateResponse,
    LocationRequired,
    NotCheckedIn,
    OutOfRange,
    SessionClosed,
    ValidationTransportFailure,
    VerificationError,
)
from geo import check_point_in_geofence, relaxed_radius, session_geofence
from sessions.models import ActivityLog, AttendanceSession
from sessions.schemas import SessionState
from sessions.service import SessionService
from settings import settings

logger = logging.getLogger(__name__)


class PresenceCheckService:
    """Service class for presence check operations."""

    def __init__(self, db: Session, now: Callable = utcnow):
        self.db = db
        self.now = now
        self.sessions = SessionService(db, now=now)

    def get_check(self, check_id: str) -> SessionCheck:
        check = self.db.get(SessionCheck, check_id)
        if check is None:
            raise HTTPException(status_code=404, detail="Vérification non trouvée")
        return check

    def trigger_check(self, session_id: str, lecturer_id: str) -> SessionCheck:
        """Issue a check with a fixed window, starting now."""
        session = self.sessions.get_session(session_id)
        if session.lecturer_id != lecturer_id:
            raise HTTPException(status_code=403, detail="Seul l'enseignant peut lancer une vérification")
        if self.sessions.state_of(session) != SessionState.active:
            raise SessionClosed()

        created = self.now()
        check = SessionCheck(
            session_id=session_id,
            created_at=created,
            expires_at=created + timedelta(seconds=settings.check_window_seconds),
            is_active=True,
            created_by=lecturer_id,
        )
        self.db.add(check)
        self.db.flush()
        self.db.add(
            ActivityLog(
                user_id=lecturer_id,
                action="presence_check_triggered",
                description=f"Presence check ({settings.check_window_seconds}s)",
                entity_id=check.id,
                entity_type="check",
                created_at=created,
            )
        )
        commit_or_fail(self.db)
        metrics.PRESENCE_CHECKS.inc()
        logger.info("Presence check %s issued for session %s", check.id, session_id)
        return check

    def deactivate_check(self, check_id: str, lecturer_id: str) -> SessionCheck:
        check = self.get_check(check_id)
        if check.created_by != lecturer_id:
            raise HTTPException(status_code=403, detail="Seul l'émetteur peut clore la vérification")
        if check.is_active:
            check.is_active = False
            commit_or_fail(self.db)
        return check

    def is_open(self, check: SessionCheck) -> bool:
        return check.is_active and self.now() < as_utc(check.expires_at)

    def respond(
        self,
        check_id: str,
        student_id: str,
        location: Optional[Tuple[float, float]] = None,
        accuracy: Optional[float] = None,
    ) -> SessionCheckResponse:
        """Record a student's confirmation if it arrives within the window."""
        try:
            check = self.get_check(check_id)
            now = self.now()
            if not check.is_active or now >= as_utc(check.expires_at):
                raise CheckExpired()

            session = self.sessions.get_session(check.session_id)
            if self.sessions.state_of(session) != SessionState.active:
                raise SessionClosed()
            self._require_checked_in(session.id, student_id)
            self._require_no_response(check.id, student_id)
            self._check_location(session, location)

            response = SessionCheckResponse(
                check_id=check.id,
                session_id=check.session_id,
                student_id=student_id,
                responded_at=now,
                latitude=location[0] if location else None,
                longitude=location[1] if location else None,
                accuracy_meters=accuracy if location else None,
            )
            self.db.add(response)
            self.db.commit()
        except VerificationError as e:
            self.db.rollback()
            metrics.CHECK_RESPONSES.labels(outcome=e.detail["code"]).inc()
            raise
        except IntegrityError:
            self.db.rollback()
            metrics.CHECK_RESPONSES.labels(outcome=DuplicateResponse.code).inc()
            raise DuplicateResponse()
        except SQLAlchemyError as e:
            self.db.rollback()
            metrics.CHECK_RESPONSES.labels(outcome=ValidationTransportFailure.code).inc()
            logger.error("Store unavailable during check response: %s", e)
            raise ValidationTransportFailure() from e

        metrics.CHECK_RESPONSES.labels(outcome="accepted").inc()
        return response

    def _require_checked_in(self, session_id: str, student_id: str) -> None:
        record = (
            self.db.query(AttendanceRecord.id)
            .filter(
                AttendanceRecord.session_id == session_id,
                AttendanceRecord.student_id == student_id,
            )
            .first()
        )
        if record is None:
            raise NotCheckedIn()

    def _require_no_response(self, check_id: str, student_id: str) -> None:
        existing = (
            self.db.query(SessionCheckResponse.id)
            .filter(
                SessionCheckResponse.check_id == check_id,
                SessionCheckResponse.student_id == student_id,
            )
            .first()
        )
        if existing is not None:
            raise DuplicateResponse()

    def _check_location(self, session: AttendanceSession, location) -> None:
        fence = session_geofence(session)
        if fence is None:
            return
        if location is None:
            raise LocationRequired()
        center_lat, center_lon, radius = fence
        allowed = relaxed_radius(radius, settings.check_radius_tolerance)
        inside, distance = check_point_in_geofence(
            location[0], location[1], center_lat, center_lon, allowed
        )
        if not inside:
            raise OutOfRange(distance, allowed)

    def response_count(self, check_id: str) -> int:
        return (
            self.db.query(SessionCheckResponse)
            .filter(SessionCheckResponse.check_id == check_id)
            .count()
        )

    def check_state(self, check_id: str) -> dict:
        check = self.get_check(check_id)
        is_open = self.is_open(check)
        return {
            "check_id": check.id,
            "session_id": check.session_id,
            "is_active": is_open,
            "expires_at": as_utc(check.expires_at),
            "seconds_remaining": seconds_remaining(check.expires_at, self.now()) if is_open else 0,
            "response_count": self.response_count(check.id),
        }
