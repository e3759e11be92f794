"""SQLAlchemy models for classes, attendance sessions and the activity log."""
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from db import Base


def new_id() -> str:
    return str(uuid.uuid4())


class Course(Base):
    """A class taught by a lecturer."""

    __tablename__ = "classes"

    id = Column(String(36), primary_key=True, default=new_id)
    course_code = Column(String(50), nullable=False, index=True)
    course_name = Column(String(200), nullable=False)
    lecturer_id = Column(String(36), nullable=False, index=True)

    @property
    def label(self) -> str:
        return f"{self.course_code} - {self.course_name}"


class AttendanceSession(Base):
    """One time-boxed attendance window; end_time is fixed at creation."""

    __tablename__ = "attendance_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    class_id = Column(
        String(36), ForeignKey("classes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    lecturer_id = Column(String(36), nullable=False, index=True)
    session_code = Column(String(64), unique=True, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    location_required = Column(Boolean, default=False, nullable=False)
    classroom_latitude = Column(Float, nullable=True)
    classroom_longitude = Column(Float, nullable=True)
    geofence_radius_meters = Column(Float, nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    end_reason = Column(String(20), nullable=True)


class ActivityLog(Base):
    """Audit trail of lecturer actions."""

    __tablename__ = "activity_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    entity_id = Column(String(36), nullable=True)
    entity_type = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
