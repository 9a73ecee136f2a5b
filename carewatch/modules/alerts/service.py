from __future__ import annotations

from typing import Callable

import structlog

from carewatch.core.errors import NotFoundError
from carewatch.modules.activity.service import ActivitySink
from carewatch.modules.alerts.models import Alert, TransitionResult
from carewatch.modules.alerts.state_machine import AlertStateMachine
from carewatch.modules.monitoring.config import MonitoringRules
from carewatch.modules.notifications.dispatcher import DispatchResult, NotificationDispatcher
from carewatch.modules.notifications.models import NotificationAttempt
from carewatch.shared.constants import ActivitySource, AlertKind
from carewatch.store.base import EngineStore

log = structlog.get_logger()


class AlertService:
    """Operator and service-facing alert actions (fall reports, acknowledgments)."""

    def __init__(
        self,
        store: EngineStore,
        sink: ActivitySink,
        state_machine: AlertStateMachine,
        dispatcher: NotificationDispatcher,
        rules_loader: Callable[[], MonitoringRules],
    ) -> None:
        self._store = store
        self._sink = sink
        self._state_machine = state_machine
        self._dispatcher = dispatcher
        self._rules_loader = rules_loader

    async def report_fall(
        self,
        location: str,
        email: str | None = None,
        phone: str | None = None,
        message: str | None = None,
    ) -> tuple[TransitionResult, DispatchResult]:
        patient = await self._store.find_patient_by_contact(email=email, phone=phone)
        if patient is None:
            raise NotFoundError("Patient not found", email=email, phone=phone)
        config = self._rules_loader().for_patient(patient.config_override)

        result = await self._state_machine.escalate_immediately(
            patient.id, kind=AlertKind.FALL_DETECTED, location=location, message=message
        )
        dispatch = await self._dispatcher.dispatch(
            result.alert, config.immediate_escalation_recipient, patient=patient, config=config
        )
        log.warning(
            "alert.fall_reported",
            patient_id=patient.id,
            alert_id=result.alert.id,
            new_alert=result.applied,
            notification=dispatch.status.value,
        )
        return result, dispatch

    async def acknowledge(
        self, alert_id: str, actor: str, note: str | None = None
    ) -> TransitionResult:
        alert = await self._require(alert_id)
        if not alert.is_terminal:
            # A fresh silence baseline, but it resolves only this alert.
            await self._sink.record(
                alert.patient_id,
                ActivitySource.EXPLICIT_ACKNOWLEDGMENT,
                detail=note,
                actor=actor,
                alert_id=alert.id,
            )
        return await self._state_machine.acknowledge(alert_id, actor, note)

    async def mark_false_alarm(
        self, alert_id: str, actor: str, note: str | None = None
    ) -> TransitionResult:
        await self._require(alert_id)
        return await self._state_machine.mark_false_alarm(alert_id, actor, note)

    async def acknowledge_patient(
        self, patient_id: str, actor: str | None = None, note: str | None = None
    ) -> list[TransitionResult]:
        """A patient replied to a check-in: record it and close their open alerts."""
        patient = await self._store.get_patient(patient_id)
        if patient is None:
            raise NotFoundError("Patient not found", patient_id=patient_id)
        actor = actor or patient.display_name
        await self._sink.record(
            patient_id, ActivitySource.EXPLICIT_ACKNOWLEDGMENT, detail=note, actor=actor
        )
        results = []
        for alert in await self._store.list_active_alerts([patient_id]):
            results.append(await self._state_machine.acknowledge(alert.id, actor, note))
        return results

    async def detail(self, alert_id: str) -> tuple[Alert, list[NotificationAttempt]]:
        alert = await self._require(alert_id)
        return alert, await self._store.list_attempts(alert_id)

    async def _require(self, alert_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert not found", alert_id=alert_id)
        return alert
