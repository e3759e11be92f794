"""SQLAlchemy models for attendance records."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, String, UniqueConstraint
from db import Base
from sessions.models import new_id


class AttendanceRecord(Base):
    """An accepted presence claim. Immutable audit row, never deleted."""

    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_attendance_session_student"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    student_id = Column(String(36), nullable=False, index=True)
    scanned_at = Column(DateTime(timezone=True), nullable=False, index=True)
    device_fingerprint = Column(String(64), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    distance_meters = Column(Float, nullable=True)
    accuracy_meters = Column(Float, nullable=True)
