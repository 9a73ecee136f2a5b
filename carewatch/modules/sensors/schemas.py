from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import Field

from carewatch.shared.schemas import CamelModel


class DetectionState(str, Enum):
    DETECTED = "DETECTED"
    NOT_DETECTED = "NOT_DETECTED"
    FALL_DETECTED = "FALL_DETECTED"


class SensorContext(CamelModel):
    device_type: str
    device_mac: str = Field(min_length=1)
    detection_state: DetectionState
    # Epoch milliseconds as sent by the vendor.
    time_of_sample: float = Field(gt=0)

    @property
    def sampled_at(self) -> datetime:
        return datetime.fromtimestamp(self.time_of_sample / 1000, tz=timezone.utc)


class SensorWebhookPayload(CamelModel):
    event_type: str
    event_version: Optional[str] = None
    context: SensorContext


class SensorEventStatus(str, Enum):
    ACCEPTED = "accepted"
    ABSENCE = "absence"
    ESCALATED = "escalated"
    IGNORED = "ignored"


class SensorWebhookResponse(CamelModel):
    success: bool = True
    status: SensorEventStatus
    patient_id: Optional[str] = None
    activity_id: Optional[str] = None
    alert_id: Optional[str] = None
    notification: Optional[str] = None
