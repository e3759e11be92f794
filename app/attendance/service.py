"""Accept path for attendance scans.

Checks run in order and stop at the first failure: liveness, duplicate,
geofence. Certain failures block; a device shared between students is only
reported to the lecturer (see ``device_anomalies``).
"""
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import metrics
from attendance.models import AttendanceRecord
from attendance.schemas import ScanRequest
from countdown import as_utc, utcnow
from errors import (
    DuplicateScan,
    LocationRequired,
    OutOfRange,
    SessionClosed,
    ValidationTransportFailure,
)
from geo import check_point_in_geofence, session_geofence
from sessions.models import AttendanceSession
from settings import settings

logger = logging.getLogger(__name__)


class FraudGuard:
    """Service class for attendance claims."""

    def __init__(self, db: Session, now: Callable = utcnow):
        self.db = db
        self.now = now

    def submit_scan(
        self, student_id: str, claim: ScanRequest, device_fingerprint: str
    ) -> AttendanceRecord:
        """Validate a scan and, if it passes, write the attendance record."""
        try:
            session = (
                self.db.query(AttendanceSession)
                .filter(AttendanceSession.session_code == claim.session_code)
                .first()
            )
            if session is None:
                metrics.SCAN_ATTEMPTS.labels(outcome="unknown_code").inc()
                raise HTTPException(status_code=404, detail="Code de session invalide")

            now = self.now()
            self._check_liveness(session, now)
            self._check_duplicate(session.id, student_id)
            distance = self._check_geofence(session, claim)

            record = AttendanceRecord(
                session_id=session.id,
                student_id=student_id,
                scanned_at=now,
                device_fingerprint=device_fingerprint,
                latitude=claim.latitude,
                longitude=claim.longitude,
                distance_meters=distance,
                accuracy_meters=claim.accuracy if claim.location else None,
            )
            self.db.add(record)
            self.db.commit()
        except HTTPException as e:
            self.db.rollback()
            if isinstance(e, (SessionClosed, DuplicateScan, OutOfRange, LocationRequired)):
                metrics.SCAN_ATTEMPTS.labels(outcome=e.detail["code"]).inc()
            raise
        except IntegrityError:
            # a concurrent submission for the same student won the unique constraint
            self.db.rollback()
            metrics.SCAN_ATTEMPTS.labels(outcome=DuplicateScan.code).inc()
            raise DuplicateScan()
        except SQLAlchemyError as e:
            self.db.rollback()
            metrics.SCAN_ATTEMPTS.labels(outcome=ValidationTransportFailure.code).inc()
            logger.error("Store unavailable during scan: %s", e)
            raise ValidationTransportFailure() from e

        metrics.SCAN_ATTEMPTS.labels(outcome="accepted").inc()
        logger.info("Attendance accepted: session=%s student=%s", record.session_id, student_id)
        return record

    def _check_liveness(self, session: AttendanceSession, now) -> None:
        if not session.is_active:
            raise SessionClosed()
        if not (as_utc(session.start_time) <= now < as_utc(session.end_time)):
            raise SessionClosed()

    def _check_duplicate(self, session_id: str, student_id: str) -> None:
        existing = (
            self.db.query(AttendanceRecord.id)
            .filter(
                AttendanceRecord.session_id == session_id,
                AttendanceRecord.student_id == student_id,
            )
            .first()
        )
        if existing is not None:
            raise DuplicateScan()

    def _check_geofence(self, session: AttendanceSession, claim: ScanRequest) -> Optional[float]:
        fence = session_geofence(session)
        if fence is None:
            return None
        if claim.location is None:
            raise LocationRequired()
        center_lat, center_lon, radius = fence
        inside, distance = check_point_in_geofence(
            claim.latitude, claim.longitude, center_lat, center_lon, radius
        )
        if not inside:
            raise OutOfRange(distance, radius)
        return distance

    # ---------- read side ----------

    def list_records(self, session_id: str) -> List[AttendanceRecord]:
        return (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.session_id == session_id)
            .order_by(AttendanceRecord.scanned_at.desc())
            .all()
        )

    def device_anomalies(self, lecturer_id: str) -> List[Dict]:
        """
        Fingerprints used by several distinct students across the lecturer's
        sessions. A review signal only; nothing is blocked.
        """
        rows = (
            self.db.query(
                AttendanceRecord.device_fingerprint,
                AttendanceRecord.student_id,
                AttendanceRecord.session_id,
            )
            .join(AttendanceSession, AttendanceSession.id == AttendanceRecord.session_id)
            .filter(AttendanceSession.lecturer_id == lecturer_id)
            .all()
        )
        students: Dict[str, Set[str]] = defaultdict(set)
        sessions: Dict[str, Set[str]] = defaultdict(set)
        for fingerprint, student_id, session_id in rows:
            students[fingerprint].add(student_id)
            sessions[fingerprint].add(session_id)

        anomalies = [
            {
                "device_fingerprint": fingerprint,
                "student_ids": sorted(ids),
                "session_count": len(sessions[fingerprint]),
            }
            for fingerprint, ids in students.items()
            if len(ids) >= settings.device_anomaly_min_students
        ]
        anomalies.sort(key=lambda a: len(a["student_ids"]), reverse=True)
        if anomalies:
            logger.warning(
                "%d shared device fingerprint(s) for lecturer %s", len(anomalies), lecturer_id
            )
        return anomalies
