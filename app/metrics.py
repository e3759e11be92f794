from fastapi import APIRouter
from starlette.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, Counter, Gauge

router = APIRouter()

# incremented by the services
SESSIONS_STARTED = Counter("attendance_sessions_started_total", "Attendance sessions opened")
SESSIONS_ENDED = Counter(
    "attendance_sessions_ended_total", "Attendance sessions closed", ["reason"]
)
SCAN_ATTEMPTS = Counter(
    "attendance_scan_attempts_total", "Attendance scans by outcome", ["outcome"]
)
PRESENCE_CHECKS = Counter("presence_checks_triggered_total", "Presence checks issued")
CHECK_RESPONSES = Counter(
    "presence_check_responses_total", "Presence check responses by outcome", ["outcome"]
)
LIVE_SUBSCRIBERS = Gauge("live_stream_subscribers", "Open realtime stream subscriptions")


@router.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
