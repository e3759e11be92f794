"""Business logic for the class pulse (sentiment) signal."""
from typing import Callable, Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from countdown import utcnow
from db import commit_or_fail
from errors import SessionClosed
from sentiments.models import SessionSentiment
from sentiments.schemas import SentimentEnum, empty_tally
from sessions.schemas import SessionState
from sessions.service import SessionService


class SentimentService:
    """Service class for sentiment operations."""

    def __init__(self, db: Session, now: Callable = utcnow):
        self.db = db
        self.now = now
        self.sessions = SessionService(db, now=now)

    def submit(self, session_id: str, student_id: str, sentiment: SentimentEnum) -> SessionSentiment:
        session = self.sessions.get_session(session_id)
        if self.sessions.state_of(session) != SessionState.active:
            raise SessionClosed()
        row = SessionSentiment(
            session_id=session_id,
            student_id=student_id,
            sentiment=sentiment.value,
            created_at=self.now(),
        )
        self.db.add(row)
        commit_or_fail(self.db)
        return row

    def tally(self, session_id: str) -> Dict[str, int]:
        counts = empty_tally()
        rows = (
            self.db.query(SessionSentiment.sentiment, func.count(SessionSentiment.id))
            .filter(SessionSentiment.session_id == session_id)
            .group_by(SessionSentiment.sentiment)
            .all()
        )
        for sentiment, count in rows:
            counts[sentiment] = count
        return counts
