"""SQLAlchemy models for session sentiments."""

from sqlalchemy import Column, DateTime, ForeignKey, String
from db import Base
from sessions.models import new_id


class SessionSentiment(Base):
    """Append-only class pulse signal; many per student."""

    __tablename__ = "session_sentiments"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(
        String(36),
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    student_id = Column(String(36), nullable=False)
    sentiment = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
