"""FastAPI routes for session sentiments."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from db import get_db
from auth import require_lecturer, require_student
from sentiments.service import SentimentService
from sentiments.schemas import SentimentCreate, SentimentOut, SentimentTally

router = APIRouter(prefix="/sessions", tags=["sentiments"])


@router.post("/{session_id}/sentiments", response_model=SentimentOut, status_code=201)
async def submit_sentiment(
    session_id: str,
    body: SentimentCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_student),
):
    """Envoyer un ressenti (compris / neutre / perdu)."""
    return SentimentService(db).submit(session_id, current_user["id"], body.sentiment)


@router.get("/{session_id}/sentiments", response_model=SentimentTally)
async def get_sentiment_tally(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_lecturer),
):
    """Compteurs de ressentis pour la session."""
    service = SentimentService(db)
    session = service.sessions.get_session(session_id)
    if session.lecturer_id != current_user["id"]:
        raise HTTPException(status_code=403, detail="Accès refusé")
    return service.tally(session_id)
