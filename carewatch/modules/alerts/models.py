from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel

from carewatch.shared.constants import AlertKind, AlertState, Severity
from carewatch.shared.schemas import new_id, utc_now


class AlertResolution(BaseModel):
    resolved_by: Optional[str] = None
    resolved_at: datetime
    reason: str


class AlertNote(BaseModel):
    author: Optional[str] = None
    text: str
    created_at: datetime = Field(default_factory=utc_now)


class AlertBase(BaseModel):
    patient_id: str
    kind: AlertKind
    severity: Severity = Severity.MEDIUM
    state: AlertState
    state_entered_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
    causing_activity_id: Optional[str] = None
    # When silence started being measured; None for immediate escalations.
    silence_baseline_at: Optional[datetime] = None
    location: Optional[str] = None
    message: Optional[str] = None
    resolution: Optional[AlertResolution] = None
    notes: List[AlertNote] = Field(default_factory=list)
    # True while the state is non-terminal; backs the single-active-alert index.
    active: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class Alert(AlertBase):
    id: str = Field(default_factory=new_id)


class AlertDocument(Document, AlertBase):
    id: str = Field(default_factory=new_id)  # type: ignore[assignment]

    class Settings:
        name = "alerts"
        indexes = [
            IndexModel(
                [("patient_id", 1), ("kind", 1)],
                name="one_active_alert_per_patient_kind",
                unique=True,
                partialFilterExpression={"active": True},
            ),
            IndexModel([("active", 1), ("state", 1)]),
            IndexModel([("patient_id", 1), ("created_at", -1)]),
        ]


@dataclass
class TransitionRequest:
    """A state change decided by the tick processor and applied by the state machine."""

    patient_id: str
    kind: AlertKind
    expected: AlertState
    target: AlertState
    reason: str
    alert_id: Optional[str] = None
    causing_activity_id: Optional[str] = None
    silence_baseline_at: Optional[datetime] = None
    actor: Optional[str] = None


@dataclass
class TransitionResult:
    alert: Alert
    applied: bool  # False when a concurrent writer already made the change
