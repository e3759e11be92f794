"""Session lifecycle: Active → Ended, by expiry or by the owning lecturer."""
import logging
from datetime import timedelta
from typing import Callable, List, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

import metrics
from attendance.models import AttendanceRecord
from checks.models import SessionCheck, SessionCheckResponse
from countdown import as_utc, generate_session_code, seconds_remaining, utcnow
from db import commit_or_fail
from notifications import Notifier, notifier as default_notifier
from sentiments.models import SessionSentiment
from sentiments.schemas import empty_tally
from sessions.models import ActivityLog, AttendanceSession, Course
from sessions.schemas import (
    CourseCreate,
    SessionCreate,
    SessionSnapshot,
    SessionState,
)
from settings import settings

logger = logging.getLogger(__name__)

END_REASON_MANUAL = "manual"
END_REASON_EXPIRED = "expired"


class SessionService:
    """Service class for attendance session operations."""

    def __init__(
        self,
        db: Session,
        now: Callable = utcnow,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.now = now
        self.notifier = notifier or default_notifier

    # ---------- classes ----------

    def create_course(self, lecturer_id: str, data: CourseCreate) -> Course:
        course = Course(
            course_code=data.course_code.strip().upper(),
            course_name=data.course_name.strip(),
            lecturer_id=lecturer_id,
        )
        self.db.add(course)
        commit_or_fail(self.db)
        return course

    def get_course(self, class_id: str) -> Course:
        course = self.db.get(Course, class_id)
        if course is None:
            raise HTTPException(status_code=404, detail="Cours non trouvé")
        return course

    # ---------- lifecycle ----------

    def get_session(self, session_id: str) -> AttendanceSession:
        session = self.db.get(AttendanceSession, session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session non trouvée")
        return session

    def state_of(self, session: AttendanceSession) -> SessionState:
        if session.is_active and self.now() < as_utc(session.end_time):
            return SessionState.active
        return SessionState.ended

    def seconds_remaining(self, session: AttendanceSession) -> int:
        if not session.is_active:
            return 0
        return seconds_remaining(session.end_time, self.now())

    def active_session_for_class(self, class_id: str) -> Optional[AttendanceSession]:
        candidates = (
            self.db.query(AttendanceSession)
            .filter(AttendanceSession.class_id == class_id, AttendanceSession.is_active.is_(True))
            .all()
        )
        for session in candidates:
            if self.state_of(session) == SessionState.active:
                return session
        return None

    def start_session(self, lecturer_id: str, data: SessionCreate) -> AttendanceSession:
        """Open a session; it is active from the moment it is created."""
        course = self.get_course(data.class_id)
        if course.lecturer_id != lecturer_id:
            raise HTTPException(status_code=403, detail="Ce cours ne vous appartient pas")

        start = self.now()
        radius = None
        if data.location_required:
            radius = data.geofence_radius_meters or settings.default_geofence_radius_m

        session = AttendanceSession(
            class_id=course.id,
            lecturer_id=lecturer_id,
            session_code=generate_session_code(),
            duration_minutes=data.duration_minutes,
            start_time=start,
            end_time=start + timedelta(minutes=data.duration_minutes),
            is_active=True,
            location_required=data.location_required,
            classroom_latitude=data.classroom_latitude,
            classroom_longitude=data.classroom_longitude,
            geofence_radius_meters=radius,
        )
        self.db.add(session)
        self.db.flush()
        self._log(
            lecturer_id,
            "session_started",
            f"Started attendance session for {course.label} ({data.duration_minutes} min)",
            session.id,
        )
        commit_or_fail(self.db)

        metrics.SESSIONS_STARTED.inc()
        logger.info("Session %s started for class %s", session.id, course.id)
        self.notifier.notify_session_active(course.label, data.duration_minutes)
        return session

    def end_session(self, session_id: str, lecturer_id: str) -> AttendanceSession:
        """End now. Ending an ended session is a no-op."""
        session = self.get_session(session_id)
        if session.lecturer_id != lecturer_id:
            raise HTTPException(status_code=403, detail="Seul l'enseignant peut terminer la session")
        self._close(session, END_REASON_MANUAL, lecturer_id)
        return session

    def expire_session(self, session_id: str) -> AttendanceSession:
        """Close the session if the store clock says its window has passed."""
        session = self.get_session(session_id)
        if session.is_active and self.now() >= as_utc(session.end_time):
            self._close(session, END_REASON_EXPIRED, session.lecturer_id)
        return session

    def expire_due_sessions(self) -> List[str]:
        """Close every active session whose end time has passed."""
        due = (
            self.db.query(AttendanceSession)
            .filter(AttendanceSession.is_active.is_(True))
            .filter(AttendanceSession.end_time <= self.now())
            .all()
        )
        closed = []
        for session in due:
            if self._close(session, END_REASON_EXPIRED, session.lecturer_id):
                closed.append(session.id)
        return closed

    def _close(self, session: AttendanceSession, reason: str, actor_id: str) -> bool:
        if not session.is_active:
            return False
        attendee_count = (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.session_id == session.id)
            .count()
        )
        session.is_active = False
        session.ended_at = self.now()
        session.end_reason = reason
        self._log(
            actor_id,
            "session_ended",
            f"Ended attendance session ({reason}) with {attendee_count} attendees",
            session.id,
        )
        commit_or_fail(self.db)
        metrics.SESSIONS_ENDED.labels(reason=reason).inc()
        logger.info("Session %s ended (%s), %d attendees", session.id, reason, attendee_count)
        return True

    # ---------- views ----------

    def to_response(self, session: AttendanceSession, viewer_id: Optional[str] = None) -> dict:
        """Serialise a session; the scannable code is only shown to its owner."""
        return {
            "id": session.id,
            "class_id": session.class_id,
            "lecturer_id": session.lecturer_id,
            "session_code": session.session_code if viewer_id == session.lecturer_id else None,
            "duration_minutes": session.duration_minutes,
            "start_time": as_utc(session.start_time),
            "end_time": as_utc(session.end_time),
            "is_active": session.is_active,
            "state": self.state_of(session),
            "seconds_remaining": self.seconds_remaining(session),
            "location_required": session.location_required,
            "classroom_latitude": session.classroom_latitude,
            "classroom_longitude": session.classroom_longitude,
            "geofence_radius_meters": session.geofence_radius_meters,
            "ended_at": as_utc(session.ended_at) if session.ended_at else None,
            "end_reason": session.end_reason,
        }

    def snapshot(self, session_id: str) -> SessionSnapshot:
        """Current aggregate state of a session, read from the store."""
        session = self.get_session(session_id)
        records = (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.session_id == session_id)
            .order_by(AttendanceRecord.scanned_at.desc())
            .all()
        )
        sentiments = (
            self.db.query(SessionSentiment)
            .filter(SessionSentiment.session_id == session_id)
            .all()
        )
        tally = empty_tally()
        for row in sentiments:
            tally[row.sentiment] = tally.get(row.sentiment, 0) + 1

        now = self.now()
        active_check = None
        response_ids: List[str] = []
        check = (
            self.db.query(SessionCheck)
            .filter(SessionCheck.session_id == session_id, SessionCheck.is_active.is_(True))
            .order_by(SessionCheck.created_at.desc())
            .first()
        )
        if check is not None and now < as_utc(check.expires_at):
            response_ids = [
                r.id
                for r in self.db.query(SessionCheckResponse)
                .filter(SessionCheckResponse.check_id == check.id)
                .all()
            ]
            active_check = {
                "check_id": check.id,
                "session_id": session_id,
                "is_active": True,
                "expires_at": as_utc(check.expires_at),
                "seconds_remaining": seconds_remaining(check.expires_at, now),
                "response_count": len(response_ids),
            }

        return SessionSnapshot(
            session_id=session_id,
            is_active=self.state_of(session) == SessionState.active,
            end_time=as_utc(session.end_time),
            seconds_remaining=self.seconds_remaining(session),
            attendees=[
                {"id": r.id, "student_id": r.student_id, "scanned_at": as_utc(r.scanned_at)}
                for r in records
            ],
            attendee_count=len(records),
            sentiments=[{"id": s.id, "sentiment": s.sentiment} for s in sentiments],
            sentiment_tally=tally,
            active_check=active_check,
            check_response_ids=response_ids,
        )

    # ---------- helpers ----------

    def _log(
        self,
        user_id: str,
        action: str,
        description: str,
        entity_id: Optional[str] = None,
        entity_type: str = "session",
    ) -> None:
        self.db.add(
            ActivityLog(
                user_id=user_id,
                action=action,
                description=description,
                entity_id=entity_id,
                entity_type=entity_type,
                created_at=self.now(),
            )
        )
