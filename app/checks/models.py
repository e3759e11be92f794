"""SQLAlchemy models for presence checks."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    String,
    UniqueConstraint,
)
from db import Base
from sessions.models import new_id


class SessionCheck(Base):
    """A short-lived "are you still here" challenge."""

    __tablename__ = "session_checks"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(36), nullable=False)


class SessionCheckResponse(Base):
    __tablename__ = "session_check_responses"
    __table_args__ = (
        UniqueConstraint("check_id", "student_id", name="uq_check_response_student"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    check_id = Column(
        String(36),
        ForeignKey("session_checks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    session_id = Column(
        String(36),
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    student_id = Column(String(36), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    accuracy_meters = Column(Float, nullable=True)
