"""Pydantic schemas for session sentiments."""
from datetime import datetime
from enum import Enum
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class SentimentEnum(str, Enum):
    """Class pulse values."""
    understood = "understood"
    neutral = "neutral"
    confused = "confused"


def empty_tally() -> Dict[str, int]:
    return {s.value: 0 for s in SentimentEnum}


class SentimentCreate(BaseModel):
    sentiment: SentimentEnum = Field(..., description="Ressenti de l'étudiant")


class SentimentOut(BaseModel):
    id: str
    session_id: str
    sentiment: SentimentEnum
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SentimentTally(BaseModel):
    understood: int = 0
    neutral: int = 0
    confused: int = 0
