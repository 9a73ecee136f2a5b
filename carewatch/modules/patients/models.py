from datetime import datetime
from typing import List, Optional

from beanie import Document, Indexed
from pydantic import BaseModel, EmailStr, Field

from carewatch.modules.monitoring.config import MonitoringOverride
from carewatch.shared.constants import Channel
from carewatch.shared.schemas import new_id, utc_now


class ContactRoutes(BaseModel):
    """Where a person can be reached, per channel."""

    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    webhook_recipient: Optional[str] = None
    preferred_channel: Optional[Channel] = None


class CaregiverContact(BaseModel):
    name: str
    contact: ContactRoutes = Field(default_factory=ContactRoutes)
    active: bool = True


class PatientBase(BaseModel):
    display_name: str
    contact: ContactRoutes = Field(default_factory=ContactRoutes)
    caregivers: List[CaregiverContact] = Field(default_factory=list)
    monitoring_enabled: bool = True
    monitoring_since: datetime = Field(default_factory=utc_now)
    config_override: Optional[MonitoringOverride] = None

    def active_caregivers(self) -> list[CaregiverContact]:
        return [caregiver for caregiver in self.caregivers if caregiver.active]


class Patient(PatientBase):
    """Monitored person. Owned by the external profile system; read-only here."""

    id: str = Field(default_factory=new_id)


class PatientDocument(Document, PatientBase):
    id: str = Field(default_factory=new_id)  # type: ignore[assignment]

    class Settings:
        name = "patients"
        indexes = [
            "monitoring_enabled",
            "contact.email",
            "contact.phone",
        ]


class SensorDeviceBase(BaseModel):
    device_mac: str
    patient_id: str
    device_name: str = "Motion sensor"
    location: Optional[str] = None
    active: bool = True


class SensorDevice(SensorDeviceBase):
    id: str = Field(default_factory=new_id)


class SensorDeviceDocument(Document, SensorDeviceBase):
    id: str = Field(default_factory=new_id)  # type: ignore[assignment]
    device_mac: Indexed(str, unique=True)  # type: ignore

    class Settings:
        name = "sensor_devices"
