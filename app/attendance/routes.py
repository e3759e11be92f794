"""FastAPI routes for attendance scans."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from db import get_db
from auth import require_lecturer, require_student
from security_hmac import hmac_guard
from attendance.service import FraudGuard
from attendance.schemas import AttendanceRecordResponse, ScanRequest, ScanResponse
from sessions.service import SessionService

router = APIRouter(prefix="/attendance", tags=["attendance"])


@router.post("/scan", response_model=ScanResponse, status_code=201)
async def submit_scan(
    claim: ScanRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_student),
    device_fingerprint: str = Depends(hmac_guard),
):
    """Enregistrer la présence à partir du code scanné (HMAC requis)."""
    record = FraudGuard(db).submit_scan(current_user["id"], claim, device_fingerprint)
    return ScanResponse(
        message="Présence enregistrée",
        record=AttendanceRecordResponse.model_validate(record),
    )


@router.get("/sessions/{session_id}", response_model=List[AttendanceRecordResponse])
async def list_attendance(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Liste des présences d'une session, la plus récente en premier."""
    session = SessionService(db).get_session(session_id)
    if session.lecturer_id != current_user["id"]:
        raise HTTPException(status_code=403, detail="Accès refusé")
    return FraudGuard(db).list_records(session_id)
