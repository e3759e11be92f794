"""FastAPI routes for classes and attendance sessions."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from db import get_db
from auth import get_current_user, require_lecturer
from attendance.service import FraudGuard
from sessions.service import SessionService  # absolute import avoids confusion
from sessions.schemas import (
    CourseCreate,
    CourseResponse,
    DeviceAnomaly,
    SessionCreate,
    SessionResponse,
    SessionSnapshot,
)

router = APIRouter(tags=["sessions"])


@router.post("/classes", response_model=CourseResponse, status_code=201)
async def create_course(
    course: CourseCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Créer un cours."""
    service = SessionService(db)
    return service.create_course(current_user["id"], course)


@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def start_session(
    payload: SessionCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Ouvrir une session de présence (active immédiatement)."""
    service = SessionService(db)
    if service.active_session_for_class(payload.class_id):
        raise HTTPException(status_code=409, detail="Une session est déjà active pour ce cours")
    session = service.start_session(current_user["id"], payload)
    return service.to_response(session, current_user["id"])


@router.get("/sessions/anomalies/devices", response_model=List[DeviceAnomaly])
async def device_anomalies(
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Appareils utilisés par plusieurs étudiants (signalement, pas de blocage)."""
    return FraudGuard(db).device_anomalies(current_user["id"])


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """État de la session et temps restant."""
    service = SessionService(db)
    return service.to_response(service.get_session(session_id), current_user["id"])


@router.post("/sessions/{session_id}/end", response_model=SessionResponse)
async def end_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Terminer la session maintenant (idempotent)."""
    service = SessionService(db)
    session = service.end_session(session_id, current_user["id"])
    return service.to_response(session, current_user["id"])


@router.post("/sessions/{session_id}/expire", response_model=SessionResponse)
async def expire_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Signaler l'expiration observée localement; l'horloge serveur arbitre."""
    service = SessionService(db)
    session = service.expire_session(session_id)
    return service.to_response(session, current_user["id"])


@router.get("/sessions/{session_id}/live", response_model=SessionSnapshot)
async def live_snapshot(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """État agrégé courant, utilisé pour la resynchronisation."""
    service = SessionService(db)
    session = service.get_session(session_id)
    if session.lecturer_id != current_user["id"]:
        raise HTTPException(status_code=403, detail="Accès refusé")
    return service.snapshot(session_id)
