from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class TickError(BaseModel):
    patient_id: str
    alert_id: Optional[str] = None
    error: str


class TickSummary(BaseModel):
    """Result of one evaluation pass, returned verbatim to the scheduler."""

    alerts_created: int = 0
    check_ins_sent: int = 0
    escalations_sent: int = 0
    resolved: int = 0
    errors: List[TickError] = Field(default_factory=list)
    checked_at: datetime
