"""FastAPI routes for presence checks."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from db import get_db
from auth import get_current_user, require_lecturer, require_student
from security_hmac import hmac_guard
from checks.service import PresenceCheckService
from checks.schemas import CheckResponseOut, CheckResponseRequest, CheckState, SessionCheckOut

router = APIRouter(tags=["checks"])


@router.post("/sessions/{session_id}/checks", response_model=SessionCheckOut, status_code=201)
async def trigger_presence_check(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Lancer une vérification de présence aléatoire."""
    return PresenceCheckService(db).trigger_check(session_id, current_user["id"])


@router.get("/checks/{check_id}", response_model=CheckState)
async def get_check_state(
    check_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Compte à rebours et nombre de réponses."""
    return PresenceCheckService(db).check_state(check_id)


@router.post("/checks/{check_id}/respond", response_model=CheckResponseOut, status_code=201)
async def respond_to_check(
    check_id: str,
    body: CheckResponseRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_student),
    _device: str = Depends(hmac_guard),
):
    """Confirmer sa présence (« Je suis là »)."""
    return PresenceCheckService(db).respond(
        check_id, current_user["id"], body.location, body.accuracy
    )


@router.post("/checks/{check_id}/deactivate", response_model=SessionCheckOut)
async def deactivate_check(
    check_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Clore la vérification avant son expiration."""
    return PresenceCheckService(db).deactivate_check(check_id, current_user["id"])
