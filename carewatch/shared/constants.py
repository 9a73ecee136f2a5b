from enum import Enum


class ActivitySource(str, Enum):
    CONVERSATIONAL = "conversational"
    SENSOR = "sensor"
    EXPLICIT_ACKNOWLEDGMENT = "explicit_acknowledgment"


class AlertKind(str, Enum):
    PROLONGED_INACTIVITY = "prolonged_inactivity"
    FALL_DETECTED = "fall_detected"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertState(str, Enum):
    # NORMAL is never stored: it is the absence of a non-terminal alert row.
    NORMAL = "normal"
    AWAITING_CHECKIN = "awaiting_checkin"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertState.RESOLVED, AlertState.FALSE_ALARM)


class RecipientKind(str, Enum):
    PATIENT = "patient"
    CAREGIVER = "caregiver"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Channel(str, Enum):
    WEBHOOK = "webhook"
    TELEGRAM = "telegram"
    LOG = "log"
