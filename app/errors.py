"""Verification errors surfaced to the submitting client.

Each error is an HTTPException carrying a structured detail
``{"code": ..., "message": ...}`` so clients can branch on ``code``.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException


class VerificationError(HTTPException):
    """Base class for rejected attendance claims."""

    status_code = 400
    code = "verification_error"
    message = "Vérification refusée"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        detail: Dict[str, Any] = {"code": self.code, "message": message or self.message}
        detail.update(extra)
        super().__init__(status_code=type(self).status_code, detail=detail)


class SessionClosed(VerificationError):
    """Claim arrived outside the session's active window. Not retried."""

    status_code = 410
    code = "session_closed"
    message = "La session est terminée"


class DuplicateScan(VerificationError):
    """Attendance already recorded for this student; informational."""

    status_code = 409
    code = "duplicate_scan"
    message = "Présence déjà enregistrée pour cette session"


class OutOfRange(VerificationError):
    """Claimed location is outside the geofence; the user may move and retry."""

    status_code = 422
    code = "out_of_range"
    message = "Position hors de la zone autorisée"

    def __init__(self, distance_m: float, radius_m: float, message: Optional[str] = None):
        self.distance_m = distance_m
        self.radius_m = radius_m
        super().__init__(
            message or f"{self.message} ({round(distance_m)}m, max {round(radius_m)}m)",
            distance_m=round(distance_m, 1),
            radius_m=round(radius_m, 1),
        )


class LocationRequired(VerificationError):
    status_code = 422
    code = "location_required"
    message = "La localisation est requise pour cette session"


class CheckExpired(VerificationError):
    status_code = 410
    code = "check_expired"
    message = "La vérification de présence a expiré"


class DuplicateResponse(VerificationError):
    status_code = 409
    code = "duplicate_response"
    message = "Présence déjà confirmée pour cette vérification"


class NotCheckedIn(VerificationError):
    status_code = 403
    code = "not_checked_in"
    message = "Aucune présence enregistrée pour cette session"


class ValidationTransportFailure(VerificationError):
    """The store was unreachable mid-validation; the user may retry manually."""

    status_code = 503
    code = "transport_failure"
    message = "Service indisponible, réessayez"
