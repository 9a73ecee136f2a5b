"""
Persistence contract consumed by the engine.

Every mutating operation is atomic on its own. Alert creation and alert transitions are
compare-and-set: a writer that loses a race observes a no-op (``created=False`` or
``None``) rather than an error, which is what makes overlapping ticks safe without
external locking.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable

from carewatch.modules.activity.models import ActivityRecord
from carewatch.modules.alerts.models import Alert, AlertNote
from carewatch.modules.notifications.models import NotificationAttempt
from carewatch.modules.patients.models import Patient, SensorDevice
from carewatch.shared.constants import ActivitySource, AlertKind, AlertState, AttemptOutcome, RecipientKind


class EngineStore(ABC):
    # ---- patients (read-only) ----

    @abstractmethod
    async def list_monitored_patients(self) -> list[Patient]: ...

    @abstractmethod
    async def get_patient(self, patient_id: str) -> Patient | None: ...

    @abstractmethod
    async def find_patient_by_contact(
        self, email: str | None = None, phone: str | None = None
    ) -> Patient | None: ...

    @abstractmethod
    async def find_device(self, device_mac: str) -> SensorDevice | None: ...

    # ---- activity (append-only) ----

    @abstractmethod
    async def append_activity(self, record: ActivityRecord) -> ActivityRecord: ...

    @abstractmethod
    async def latest_activity(
        self, patient_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None: ...

    @abstractmethod
    async def latest_activity_per_patient(
        self, patient_ids: Iterable[str], source: ActivitySource | None = None
    ) -> dict[str, ActivityRecord]: ...

    @abstractmethod
    async def latest_activity_for_alert(
        self, patient_id: str, alert_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None:
        """Newest record that is patient-wide or targets ``alert_id``."""

    # ---- alerts ----

    @abstractmethod
    async def create_alert_if_none_active(self, alert: Alert) -> tuple[Alert, bool]:
        """Insert ``alert`` unless a non-terminal alert exists for (patient, kind).

        Returns the stored row and whether this call created it.
        """

    @abstractmethod
    async def transition_alert(
        self, alert_id: str, expected: AlertState, changes: dict[str, Any]
    ) -> Alert | None:
        """Apply ``changes`` only if the alert is still in ``expected``; None otherwise."""

    @abstractmethod
    async def append_alert_note(self, alert_id: str, note: AlertNote) -> Alert | None: ...

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Alert | None: ...

    @abstractmethod
    async def get_active_alert(self, patient_id: str, kind: AlertKind) -> Alert | None: ...

    @abstractmethod
    async def list_active_alerts(self, patient_ids: Iterable[str] | None = None) -> list[Alert]: ...

    # ---- notification attempts (append-only, terminal outcome immutable) ----

    @abstractmethod
    async def list_attempts(
        self,
        alert_id: str,
        recipient_kind: RecipientKind | None = None,
        round: int | None = None,
    ) -> list[NotificationAttempt]:
        """Attempts ordered by (round, attempt_number)."""

    @abstractmethod
    async def claim_attempt(self, attempt: NotificationAttempt) -> bool:
        """Insert a pending attempt; False if its attempt number is already taken."""

    @abstractmethod
    async def complete_attempt(
        self,
        attempt_id: str,
        outcome: AttemptOutcome,
        completed_at: datetime,
        **fields: Any,
    ) -> NotificationAttempt | None:
        """Move a pending attempt to a terminal outcome; None if it was not pending."""

    async def close(self) -> None:
        return None
