from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Iterable

from carewatch.modules.activity.models import ActivityRecord
from carewatch.modules.alerts.models import Alert, AlertNote
from carewatch.modules.notifications.models import NotificationAttempt
from carewatch.modules.patients.models import Patient, SensorDevice
from carewatch.shared.constants import (
    ActivitySource,
    AlertKind,
    AlertState,
    AttemptOutcome,
    RecipientKind,
)
from carewatch.store.base import EngineStore


def _same_email(stored: str, wanted: str) -> bool:
    return stored.strip().lower() == wanted.strip().lower()


class MemoryStore(EngineStore):
    """
    Single-process store.

    One lock serialises every mutation, which gives the same compare-and-set guarantees
    as the Mongo store within a process. Rows are copied on the way in and out so callers
    can never mutate stored state behind the store's back.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.patients: dict[str, Patient] = {}
        self.devices: dict[str, SensorDevice] = {}
        self.activity: list[ActivityRecord] = []
        self.alerts: dict[str, Alert] = {}
        self.attempts: dict[str, NotificationAttempt] = {}

    # Seeding helpers: patients and devices are owned by the profile system.

    def add_patient(self, patient: Patient) -> Patient:
        self.patients[patient.id] = patient.model_copy(deep=True)
        return patient

    def add_device(self, device: SensorDevice) -> SensorDevice:
        self.devices[device.device_mac] = device.model_copy(deep=True)
        return device

    # ---- patients ----

    async def list_monitored_patients(self) -> list[Patient]:
        return [p.model_copy(deep=True) for p in self.patients.values() if p.monitoring_enabled]

    async def get_patient(self, patient_id: str) -> Patient | None:
        patient = self.patients.get(patient_id)
        return patient.model_copy(deep=True) if patient else None

    async def find_patient_by_contact(
        self, email: str | None = None, phone: str | None = None
    ) -> Patient | None:
        for patient in self.patients.values():
            if email and patient.contact.email and _same_email(patient.contact.email, email):
                return patient.model_copy(deep=True)
            if phone and patient.contact.phone == phone:
                return patient.model_copy(deep=True)
        return None

    async def find_device(self, device_mac: str) -> SensorDevice | None:
        device = self.devices.get(device_mac)
        return device.model_copy(deep=True) if device else None

    # ---- activity ----

    async def append_activity(self, record: ActivityRecord) -> ActivityRecord:
        async with self._lock:
            self.activity.append(record.model_copy(deep=True))
        return record

    async def latest_activity(
        self, patient_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None:
        latest = await self.latest_activity_per_patient([patient_id], source)
        return latest.get(patient_id)

    async def latest_activity_per_patient(
        self, patient_ids: Iterable[str], source: ActivitySource | None = None
    ) -> dict[str, ActivityRecord]:
        wanted = set(patient_ids)
        latest: dict[str, ActivityRecord] = {}
        for record in self.activity:
            if record.patient_id not in wanted:
                continue
            if source is not None and record.source != source:
                continue
            current = latest.get(record.patient_id)
            if current is None or record.timestamp > current.timestamp:
                latest[record.patient_id] = record
        return {pid: record.model_copy(deep=True) for pid, record in latest.items()}

    async def latest_activity_for_alert(
        self, patient_id: str, alert_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None:
        candidates = [
            record
            for record in self.activity
            if record.patient_id == patient_id
            and record.alert_id in (None, alert_id)
            and (source is None or record.source == source)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda record: record.timestamp).model_copy(deep=True)

    # ---- alerts ----

    async def create_alert_if_none_active(self, alert: Alert) -> tuple[Alert, bool]:
        async with self._lock:
            existing = self._active_alert(alert.patient_id, alert.kind)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self.alerts[alert.id] = alert.model_copy(deep=True)
            return alert.model_copy(deep=True), True

    async def transition_alert(
        self, alert_id: str, expected: AlertState, changes: dict[str, Any]
    ) -> Alert | None:
        async with self._lock:
            alert = self.alerts.get(alert_id)
            if alert is None or alert.state != expected:
                return None
            updated = alert.model_copy(update=changes, deep=True)
            self.alerts[alert_id] = updated
            return updated.model_copy(deep=True)

    async def append_alert_note(self, alert_id: str, note: AlertNote) -> Alert | None:
        async with self._lock:
            alert = self.alerts.get(alert_id)
            if alert is None:
                return None
            alert.notes.append(note.model_copy(deep=True))
            return alert.model_copy(deep=True)

    async def get_alert(self, alert_id: str) -> Alert | None:
        alert = self.alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def get_active_alert(self, patient_id: str, kind: AlertKind) -> Alert | None:
        alert = self._active_alert(patient_id, kind)
        return alert.model_copy(deep=True) if alert else None

    async def list_active_alerts(self, patient_ids: Iterable[str] | None = None) -> list[Alert]:
        wanted = set(patient_ids) if patient_ids is not None else None
        return [
            alert.model_copy(deep=True)
            for alert in self.alerts.values()
            if alert.active and (wanted is None or alert.patient_id in wanted)
        ]

    def _active_alert(self, patient_id: str, kind: AlertKind) -> Alert | None:
        for alert in self.alerts.values():
            if alert.active and alert.patient_id == patient_id and alert.kind == kind:
                return alert
        return None

    # ---- notification attempts ----

    async def list_attempts(
        self,
        alert_id: str,
        recipient_kind: RecipientKind | None = None,
        round: int | None = None,
    ) -> list[NotificationAttempt]:
        rows = [
            attempt
            for attempt in self.attempts.values()
            if attempt.alert_id == alert_id
            and (recipient_kind is None or attempt.recipient_kind == recipient_kind)
            and (round is None or attempt.round == round)
        ]
        rows.sort(key=lambda a: (a.round, a.attempt_number))
        return [row.model_copy(deep=True) for row in rows]

    async def claim_attempt(self, attempt: NotificationAttempt) -> bool:
        async with self._lock:
            for existing in self.attempts.values():
                if (
                    existing.alert_id == attempt.alert_id
                    and existing.recipient_kind == attempt.recipient_kind
                    and existing.round == attempt.round
                    and existing.attempt_number == attempt.attempt_number
                ):
                    return False
            self.attempts[attempt.id] = attempt.model_copy(deep=True)
            return True

    async def complete_attempt(
        self,
        attempt_id: str,
        outcome: AttemptOutcome,
        completed_at: datetime,
        **fields: Any,
    ) -> NotificationAttempt | None:
        async with self._lock:
            attempt = self.attempts.get(attempt_id)
            if attempt is None or attempt.outcome != AttemptOutcome.PENDING:
                return None
            updated = attempt.model_copy(
                update={"outcome": outcome, "completed_at": completed_at, **fields}, deep=True
            )
            self.attempts[attempt_id] = updated
            return updated.model_copy(deep=True)
