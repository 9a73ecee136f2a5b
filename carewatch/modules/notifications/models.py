from datetime import datetime
from typing import List, Optional

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel

from carewatch.shared.constants import AttemptOutcome, Channel, RecipientKind
from carewatch.shared.schemas import new_id, utc_now


class NotificationAttemptBase(BaseModel):
    alert_id: str
    recipient_kind: RecipientKind
    # 0 is the notification for the state itself; reminders use 1, 2, ...
    round: int = 0
    attempt_number: int
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    channel: Optional[Channel] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    # Recipients reached by this attempt or an earlier, partially failed one.
    delivered_to: List[str] = Field(default_factory=list)


class NotificationAttempt(NotificationAttemptBase):
    id: str = Field(default_factory=new_id)


class NotificationAttemptDocument(Document, NotificationAttemptBase):
    id: str = Field(default_factory=new_id)  # type: ignore[assignment]

    class Settings:
        name = "notification_attempts"
        indexes = [
            IndexModel(
                [("alert_id", 1), ("recipient_kind", 1), ("round", 1), ("attempt_number", 1)],
                name="one_attempt_per_number",
                unique=True,
            ),
        ]
