from datetime import datetime
from typing import List, Optional

from pydantic import EmailStr, Field, model_validator

from carewatch.shared.constants import (
    AlertKind,
    AlertState,
    AttemptOutcome,
    Channel,
    RecipientKind,
    Severity,
)
from carewatch.shared.schemas import CamelModel


class FallReportRequest(CamelModel):
    """Immediate-escalation report; the patient is identified by email or phone."""

    patient_email: Optional[EmailStr] = None
    patient_phone: Optional[str] = None
    location: str = Field(min_length=1, max_length=200)
    message: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _require_contact(self) -> "FallReportRequest":
        if not self.patient_email and not self.patient_phone:
            raise ValueError("patient_email or patient_phone is required")
        return self


class FallReportResponse(CamelModel):
    success: bool = True
    alert_id: str
    new_alert: bool
    notification: str


class AlertActionRequest(CamelModel):
    """Body for acknowledge and false-alarm actions."""

    actor: str = Field(min_length=1, max_length=200)
    note: Optional[str] = Field(None, max_length=2000)


class AlertNoteOut(CamelModel):
    author: Optional[str] = None
    text: str
    created_at: datetime


class AlertResolutionOut(CamelModel):
    resolved_by: Optional[str] = None
    resolved_at: datetime
    reason: str


class NotificationAttemptOut(CamelModel):
    id: str
    recipient_kind: RecipientKind
    round: int
    attempt_number: int
    outcome: AttemptOutcome
    channel: Optional[Channel] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    delivered_to: List[str] = Field(default_factory=list)


class AlertOut(CamelModel):
    id: str
    patient_id: str
    kind: AlertKind
    severity: Severity
    state: AlertState
    state_entered_at: datetime
    created_at: datetime
    location: Optional[str] = None
    message: Optional[str] = None
    resolution: Optional[AlertResolutionOut] = None
    notes: List[AlertNoteOut] = Field(default_factory=list)


class AlertActionResponse(CamelModel):
    applied: bool
    alert: AlertOut


class AlertDetailResponse(CamelModel):
    alert: AlertOut
    attempts: List[NotificationAttemptOut] = Field(default_factory=list)
