"""Database engine, session factory and declarative base."""
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from errors import ValidationTransportFailure
from settings import settings

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # SQLite connections are shared between the event loop and the threadpool
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Yield a database session, closed after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create all tables known to the models."""
    # model modules register themselves on Base.metadata when imported
    import sessions.models  # noqa: F401
    import attendance.models  # noqa: F401
    import checks.models  # noqa: F401
    import sentiments.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")


def commit_or_fail(db) -> None:
    """Commit the unit of work; a store failure becomes a retryable error."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Store write failed: %s", e)
        raise ValidationTransportFailure() from e
