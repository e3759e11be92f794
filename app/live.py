"""Server-Sent Events transport for the session change feed."""
import asyncio
import json
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

import metrics
from auth import LECTURER, get_current_user
from convergence import CHECKS, RECORDS, RESPONSES, SENTIMENTS, SESSIONS
from db import get_db
from feed import ChangeFeed, Subscription, SubscriptionDropped, change_feed
from sessions.models import AttendanceSession
from sessions.service import SessionService
from settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()


def session_subscription(feed: ChangeFeed, session_id: str, full: bool = True) -> Subscription:
    """
    One handle scoped to a session. The owning lecturer's dashboard gets
    attendance, sentiments and check responses; anyone else only follows
    the session row and its presence checks.
    """
    filters = [
        (SESSIONS, "id", session_id),
        (CHECKS, "session_id", session_id),
    ]
    if full:
        filters += [
            (RECORDS, "session_id", session_id),
            (SENTIMENTS, "session_id", session_id),
            (RESPONSES, "session_id", session_id),
        ]
    return feed.subscribe(*filters)


def is_dashboard_viewer(session: AttendanceSession, user: dict) -> bool:
    return user.get("role") == LECTURER and session.lecturer_id == user.get("id")


def format_sse(payload: dict, event: str = "message") -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


async def session_events(feed: ChangeFeed, session_id: str, heartbeat: float, full: bool = True):
    """Yield SSE frames for a session until the client goes away."""
    subscription = session_subscription(feed, session_id, full)
    metrics.LIVE_SUBSCRIBERS.inc()
    try:
        while True:
            try:
                change = await asyncio.wait_for(subscription.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield format_sse({"alive": True}, event="heartbeat")
                continue
            except SubscriptionDropped:
                # the client reconnects and re-fetches GET /sessions/{id}/live
                yield format_sse({"dropped": True}, event="resync")
                return
            yield format_sse(change.to_json(), event=change.table)
    finally:
        subscription.close()
        metrics.LIVE_SUBSCRIBERS.dec()
        logger.info("Live stream closed")


@router.get("/stream/sessions/{session_id}")
async def stream_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    session = SessionService(db).get_session(session_id)
    full = is_dashboard_viewer(session, current_user)
    return StreamingResponse(
        session_events(change_feed, session_id, settings.stream_heartbeat_seconds, full),
        media_type="text/event-stream",
    )
