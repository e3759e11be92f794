"""Pydantic schemas for classes and attendance sessions."""
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from checks.schemas import CheckState


class SessionState(str, Enum):
    """Session lifecycle. Sessions are created already active."""
    scheduled = "scheduled"
    active = "active"
    ended = "ended"


class CourseCreate(BaseModel):
    course_code: str = Field(..., min_length=1, max_length=50, description="Code du cours")
    course_name: str = Field(..., min_length=1, max_length=200, description="Intitulé")


class CourseResponse(CourseCreate):
    id: str
    lecturer_id: str

    model_config = ConfigDict(from_attributes=True)


class SessionCreate(BaseModel):
    """Schema for opening an attendance session."""
    class_id: str = Field(..., description="ID du cours")
    duration_minutes: int = Field(..., ge=1, le=600, description="Durée en minutes")
    location_required: bool = Field(default=False, description="Géolocalisation exigée")
    classroom_latitude: Optional[float] = Field(None, ge=-90, le=90)
    classroom_longitude: Optional[float] = Field(None, ge=-180, le=180)
    geofence_radius_meters: Optional[float] = Field(None, gt=0, description="Rayon en mètres")

    @model_validator(mode="after")
    def classroom_coordinates_when_required(self):
        if self.location_required and (
            self.classroom_latitude is None or self.classroom_longitude is None
        ):
            raise ValueError("Coordonnées de la salle requises pour la géolocalisation")
        return self


class SessionResponse(BaseModel):
    id: str
    class_id: str
    lecturer_id: str
    session_code: Optional[str] = None
    duration_minutes: int
    start_time: datetime
    end_time: datetime
    is_active: bool
    state: SessionState
    seconds_remaining: int
    location_required: bool
    classroom_latitude: Optional[float] = None
    classroom_longitude: Optional[float] = None
    geofence_radius_meters: Optional[float] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None


class AttendeeEntry(BaseModel):
    id: str
    student_id: str
    scanned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SentimentEntry(BaseModel):
    id: str
    sentiment: str

    model_config = ConfigDict(from_attributes=True)


class SessionSnapshot(BaseModel):
    """Authoritative aggregate state, used to resynchronise observers."""
    session_id: str
    is_active: bool
    end_time: datetime
    seconds_remaining: int
    attendees: List[AttendeeEntry]
    attendee_count: int
    sentiments: List[SentimentEntry]
    sentiment_tally: Dict[str, int]
    active_check: Optional[CheckState] = None
    check_response_ids: List[str] = []


class DeviceAnomaly(BaseModel):
    """A device fingerprint seen under several student identities."""
    device_fingerprint: str
    student_ids: List[str]
    session_count: int
