from datetime import datetime
from typing import List, Optional

from pydantic import Field

from carewatch.shared.constants import ActivitySource
from carewatch.shared.schemas import CamelModel


class CheckInRequest(CamelModel):
    """A conversational check-in relayed by the chat service."""

    patient_id: str = Field(min_length=1)
    detail: Optional[str] = Field(None, max_length=2000)
    timestamp: Optional[datetime] = None


class AcknowledgmentRequest(CamelModel):
    """The patient answered a check-in ("I'm fine")."""

    patient_id: str = Field(min_length=1)
    actor: Optional[str] = Field(None, max_length=200)
    note: Optional[str] = Field(None, max_length=2000)


class ActivityOut(CamelModel):
    id: str
    patient_id: str
    source: ActivitySource
    timestamp: datetime


class AcknowledgmentResponse(CamelModel):
    activity_recorded: bool = True
    resolved_alert_ids: List[str] = Field(default_factory=list)
