"""Pydantic schemas for presence checks."""
from typing import Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LocationMixin(BaseModel):
    """Optional GPS reading reported by the device (trusted client input)."""

    latitude: Optional[float] = Field(None, ge=-90, le=90, description="Latitude")
    longitude: Optional[float] = Field(None, ge=-180, le=180, description="Longitude")
    accuracy: Optional[float] = Field(None, ge=0, description="Précision GPS en mètres")

    @model_validator(mode="after")
    def both_or_neither(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Latitude et longitude doivent être fournies ensemble")
        return self

    @property
    def location(self):
        if self.latitude is None:
            return None
        return (self.latitude, self.longitude)


class CheckResponseRequest(LocationMixin):
    """Body of a student's "I am still here" confirmation."""


class SessionCheckOut(BaseModel):
    id: str
    session_id: str
    created_at: datetime
    expires_at: datetime
    is_active: bool
    created_by: str

    model_config = ConfigDict(from_attributes=True)


class CheckResponseOut(BaseModel):
    id: str
    check_id: str
    student_id: str
    responded_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckState(BaseModel):
    """Live view of a check: countdown and tally."""

    check_id: str
    session_id: str
    is_active: bool
    expires_at: datetime
    seconds_remaining: int
    response_count: int
