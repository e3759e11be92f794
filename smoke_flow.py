#!/usr/bin/env python3
"""Smoke script for a running server: one session from start to end."""
import json
import sys
import time

import requests

# Add the app directory to the Python path
sys.path.insert(0, "app")

from auth import LECTURER, STUDENT, create_access_token  # noqa: E402
from security_hmac import sign_payload  # noqa: E402
from settings import settings  # noqa: E402

BASE_URL = "http://localhost:8000"


def bearer(user_id, role):
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id, 'role': role})}"}


def signed_post(path, user_id, payload, device_id="smoke-device"):
    body = json.dumps(payload).encode("utf-8")
    ts = int(time.time())
    headers = {
        **bearer(user_id, STUDENT),
        "Content-Type": "application/json",
        "X-Api-Key": settings.API_KEY_APP or "",
        "X-Device-Id": device_id,
        "X-Ts": str(ts),
        "X-Signature": sign_payload(settings.SIGNING_SECRET or "", ts, body),
    }
    return requests.post(f"{BASE_URL}{path}", data=body, headers=headers)


def expect(step, response, status):
    if response.status_code != status:
        print(f"❌ {step}: expected {status}, got {response.status_code} - {response.text}")
        return False
    print(f"✅ {step}")
    return True


def run_session_flow():
    """Open a session, scan, answer a presence check and end the session."""
    lecturer = bearer("smoke-lecturer", LECTURER)

    print("🕒 Attendance session smoke test")
    print("=" * 50)

    try:
        response = requests.post(
            f"{BASE_URL}/classes",
            json={"course_code": "SMOKE", "course_name": "Smoke test"},
            headers=lecturer,
        )
    except requests.exceptions.ConnectionError:
        print("❌ Cannot connect to server. Make sure it's running on localhost:8000")
        return False
    if not expect("Create class", response, 201):
        return False

    response = requests.post(
        f"{BASE_URL}/sessions",
        json={"class_id": response.json()["id"], "duration_minutes": 5},
        headers=lecturer,
    )
    if not expect("Start session", response, 201):
        return False
    session = response.json()

    scan = {"session_code": session["session_code"]}
    if not expect("Scan accepted", signed_post("/attendance/scan", "smoke-student", scan), 201):
        return False
    if not expect("Duplicate scan rejected", signed_post("/attendance/scan", "smoke-student", scan), 409):
        return False

    response = requests.post(f"{BASE_URL}/sessions/{session['id']}/checks", headers=lecturer)
    if not expect("Presence check issued", response, 201):
        return False
    check_id = response.json()["id"]
    if not expect("Presence confirmed", signed_post(f"/checks/{check_id}/respond", "smoke-student", {}), 201):
        return False

    response = requests.post(f"{BASE_URL}/sessions/{session['id']}/end", headers=lecturer)
    if not expect("Session ended", response, 200):
        return False
    if not expect("Late scan rejected", signed_post("/attendance/scan", "late-student", scan), 410):
        return False

    print("\n🎉 Session flow passed!")
    return True


if __name__ == "__main__":
    success = run_session_flow()
    sys.exit(0 if success else 1)
