"""HMAC-signed device requests.

Student devices sign ``"<ts>." + body`` with the shared signing secret and
send their device id. The guard derives the device fingerprint stored on
attendance records from that id.
"""
import hashlib
import hmac
import time
from typing import Optional

from fastapi import Header, HTTPException, Request

from settings import settings


def sign_payload(secret: str, ts: int, body: bytes) -> str:
    """Signature expected in the X-Signature header."""
    msg = str(ts).encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str, ts: int, body: bytes, signature: str, now: Optional[float] = None
) -> bool:
    """Signature matches and the timestamp is within the allowed skew."""
    now = time.time() if now is None else now
    if abs(int(now) - ts) > settings.max_clock_skew_seconds:
        return False
    return hmac.compare_digest(sign_payload(secret, ts, body), signature)


def device_fingerprint(device_id: str) -> str:
    """Stable, non-reversible fingerprint for a device id."""
    return hashlib.sha256(device_id.strip().encode("utf-8")).hexdigest()


async def hmac_guard(
    request: Request,
    x_api_key: str = Header(None),
    x_device_id: str = Header(None),
    x_ts: str = Header(None),
    x_signature: str = Header(None),
) -> str:
    """Reject unsigned or stale device requests; returns the device fingerprint."""
    if not all([x_api_key, x_device_id, x_ts, x_signature]):
        raise HTTPException(status_code=401, detail="missing device signature headers")
    if not settings.API_KEY_APP or not hmac.compare_digest(x_api_key, settings.API_KEY_APP):
        raise HTTPException(status_code=401, detail="invalid api key")
    if not settings.SIGNING_SECRET:
        raise HTTPException(status_code=500, detail="server signing secret not set")
    try:
        ts = int(x_ts)
    except ValueError:
        raise HTTPException(status_code=401, detail="bad timestamp")

    body = await request.body()
    if not verify_signature(settings.SIGNING_SECRET, ts, body, x_signature):
        raise HTTPException(status_code=401, detail="bad or stale signature")

    fingerprint = device_fingerprint(x_device_id)
    request.state.device_fingerprint = fingerprint
    return fingerprint
