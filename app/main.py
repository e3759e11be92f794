"""FastAPI application for attendance sessions and presence verification."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

# local modules (same folder as main.py inside the container)
from metrics import router as metrics_router
from live import router as live_router

from db import SessionLocal, init_db
from feed import change_feed
from settings import settings
from sessions.routes import router as sessions_router
from sessions.service import SessionService
from attendance.routes import router as attendance_router
from checks.routes import router as checks_router
from sentiments.routes import router as sentiments_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# every commit made through SessionLocal is published to live observers
change_feed.bind(SessionLocal)


async def sweep_expired_sessions(interval: float) -> None:
    """Close sessions whose end time passed while nobody was watching."""
    while True:
        db = SessionLocal()
        try:
            closed = SessionService(db).expire_due_sessions()
            if closed:
                logger.info("Expired %d session(s)", len(closed))
        except Exception:
            logger.exception("Session expiry sweep failed")
        finally:
            db.close()
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        init_db()
    sweeper = asyncio.create_task(sweep_expired_sessions(settings.expiry_sweep_interval_seconds))
    try:
        yield
    finally:
        sweeper.cancel()
        change_feed.disconnect_all()


app = FastAPI(
    title="Attendance Session Engine",
    description="Sessions de présence, vérification anti-fraude et suivi en temps réel",
    version="1.0.0",
    lifespan=lifespan,
)

# Observability & live stream
app.include_router(metrics_router)  # exposes GET /metrics
app.include_router(live_router)  # exposes GET /stream/sessions/{id}

# Functional routers
app.include_router(sessions_router)
app.include_router(attendance_router)
app.include_router(checks_router)
app.include_router(sentiments_router)


# --------------------
# Root
# --------------------
@app.get("/")
async def root():
    return {"message": "API de gestion de présence", "version": "1.0.0"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
