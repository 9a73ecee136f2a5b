from datetime import datetime
from typing import Optional

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel

from carewatch.shared.constants import ActivitySource
from carewatch.shared.schemas import new_id, utc_now


class ActivityRecordBase(BaseModel):
    patient_id: str
    source: ActivitySource
    timestamp: datetime
    detail: Optional[str] = None
    actor: Optional[str] = None
    device_mac: Optional[str] = None
    # Set when the signal concerns one alert only, such as an operator acknowledging it.
    alert_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utc_now)


class ActivityRecord(ActivityRecordBase):
    """A "not in distress" signal. Append-only; never mutated."""

    id: str = Field(default_factory=new_id)


class ActivityRecordDocument(Document, ActivityRecordBase):
    id: str = Field(default_factory=new_id)  # type: ignore[assignment]

    class Settings:
        name = "activity_records"
        indexes = [
            IndexModel([("patient_id", 1), ("timestamp", -1)]),
            IndexModel([("patient_id", 1), ("source", 1), ("timestamp", -1)]),
        ]
