"""Pydantic schemas for attendance scans."""
from typing import Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from checks.schemas import LocationMixin


class ScanRequest(LocationMixin):
    """A scanned session code plus the device's location, if any."""

    session_code: str = Field(..., min_length=1, max_length=64, description="Code scanné")


class AttendanceRecordResponse(BaseModel):
    id: str
    session_id: str
    student_id: str
    scanned_at: datetime
    distance_meters: Optional[float] = None
    accuracy_meters: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class ScanResponse(BaseModel):
    status: str = "accepted"
    message: str
    record: AttendanceRecordResponse
