"""
Periodic silence evaluation.

A tick is stateless: everything it needs is read from the store, and every write goes
through the alert state machine's compare-and-set operations. Overlapping ticks, or a
tick racing an acknowledgment, therefore converge on the same alert rows and the
idempotency guard keeps their notifications to one send each.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import structlog

from carewatch.core.errors import ConfigError
from carewatch.modules.activity.models import ActivityRecord
from carewatch.modules.alerts.models import Alert, TransitionRequest
from carewatch.modules.alerts.state_machine import AlertStateMachine
from carewatch.modules.monitoring.config import MonitoringConfig, MonitoringRules
from carewatch.modules.monitoring.schemas import TickError, TickSummary
from carewatch.modules.notifications.dispatcher import DispatchStatus, NotificationDispatcher
from carewatch.modules.patients.models import Patient
from carewatch.shared.constants import ActivitySource, AlertKind, AlertState, RecipientKind
from carewatch.shared.schemas import ensure_utc, new_id, utc_now
from carewatch.store.base import EngineStore

log = structlog.get_logger()


def silence_baseline(patient: Patient, latest: Optional[ActivityRecord]) -> datetime:
    """Silence is measured from the newest activity, or from when monitoring began."""
    since = ensure_utc(patient.monitoring_since)
    if latest is None:
        return since
    return max(ensure_utc(latest.timestamp), since)


class ThresholdEvaluator:
    def __init__(
        self,
        store: EngineStore,
        state_machine: AlertStateMachine,
        dispatcher: NotificationDispatcher,
        rules_loader: Callable[[], MonitoringRules],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._dispatcher = dispatcher
        self._rules_loader = rules_loader
        self._clock = clock

    async def tick(self, now: datetime | None = None) -> TickSummary:
        now = ensure_utc(now or self._clock())
        tick_log = log.bind(tick_id=new_id())

        # Rules and the patient roster are prerequisites: failures here abort the tick.
        rules = self._rules_loader()
        patients = await self._store.list_monitored_patients()
        patient_ids = [patient.id for patient in patients]
        latest_any = await self._store.latest_activity_per_patient(patient_ids)
        alerts_by_patient: dict[str, list[Alert]] = {}
        for alert in await self._store.list_active_alerts(patient_ids):
            alerts_by_patient.setdefault(alert.patient_id, []).append(alert)

        summary = TickSummary(checked_at=now)
        for patient in patients:
            config = rules.for_patient(patient.config_override)
            try:
                await self._evaluate_patient(
                    patient,
                    config,
                    latest_any.get(patient.id),
                    alerts_by_patient.get(patient.id, []),
                    now,
                    summary,
                )
            except ConfigError:
                raise
            except Exception as exc:
                tick_log.exception("tick.patient_failed", patient_id=patient.id)
                summary.errors.append(TickError(patient_id=patient.id, error=str(exc)))

        tick_log.info(
            "tick.completed",
            patients=len(patients),
            alerts_created=summary.alerts_created,
            check_ins_sent=summary.check_ins_sent,
            escalations_sent=summary.escalations_sent,
            resolved=summary.resolved,
            errors=len(summary.errors),
        )
        return summary

    async def _evaluate_patient(
        self,
        patient: Patient,
        config: MonitoringConfig,
        latest: Optional[ActivityRecord],
        alerts: list[Alert],
        now: datetime,
        summary: TickSummary,
    ) -> None:
        inactivity = next(
            (alert for alert in alerts if alert.kind == AlertKind.PROLONGED_INACTIVITY), None
        )
        if inactivity is None:
            await self._check_silence(patient, config, latest, now, summary)
        elif inactivity.state == AlertState.AWAITING_CHECKIN:
            await self._check_awaiting(patient, config, inactivity, latest, now, summary)

        for alert in alerts:
            if alert.state == AlertState.ESCALATED:
                await self._check_escalated(patient, config, alert, now, summary)

    async def _check_silence(
        self,
        patient: Patient,
        config: MonitoringConfig,
        latest: Optional[ActivityRecord],
        now: datetime,
        summary: TickSummary,
    ) -> None:
        baseline = silence_baseline(patient, latest)
        silence = (now - baseline).total_seconds()
        if silence < config.soft_threshold_seconds:
            return

        location = None
        if latest is not None and latest.device_mac:
            device = await self._store.find_device(latest.device_mac)
            location = device.location if device else None

        result = await self._state_machine.apply(
            TransitionRequest(
                patient_id=patient.id,
                kind=AlertKind.PROLONGED_INACTIVITY,
                expected=AlertState.NORMAL,
                target=AlertState.AWAITING_CHECKIN,
                reason="silence_threshold",
                causing_activity_id=latest.id if latest else None,
                silence_baseline_at=baseline,
            ),
            now=now,
            location=location,
        )
        if result.applied:
            summary.alerts_created += 1
        if result.alert.state == AlertState.AWAITING_CHECKIN:
            await self._notify(result.alert, RecipientKind.PATIENT, 0, patient, config, summary)

    async def _check_awaiting(
        self,
        patient: Patient,
        config: MonitoringConfig,
        alert: Alert,
        latest: Optional[ActivityRecord],
        now: datetime,
        summary: TickSummary,
    ) -> None:
        if latest is not None and latest.alert_id not in (None, alert.id):
            # Acknowledging another alert says nothing about this one.
            latest = await self._store.latest_activity_for_alert(patient.id, alert.id)
        baseline = ensure_utc(alert.silence_baseline_at or alert.state_entered_at)
        if latest is not None and ensure_utc(latest.timestamp) > baseline:
            acknowledged = latest.source == ActivitySource.EXPLICIT_ACKNOWLEDGMENT
            result = await self._state_machine.apply(
                TransitionRequest(
                    patient_id=patient.id,
                    kind=alert.kind,
                    expected=AlertState.AWAITING_CHECKIN,
                    target=AlertState.RESOLVED,
                    reason="acknowledged" if acknowledged else "activity_resumed",
                    alert_id=alert.id,
                    causing_activity_id=latest.id,
                    actor=latest.actor or latest.source.value,
                ),
                now=now,
            )
            if result.applied:
                summary.resolved += 1
            return

        since_transition = (now - ensure_utc(alert.state_entered_at)).total_seconds()
        if since_transition < config.escalation_window_seconds:
            # Still waiting for the patient: make sure the check-in actually went out.
            await self._notify(alert, RecipientKind.PATIENT, 0, patient, config, summary)
            return

        result = await self._state_machine.apply(
            TransitionRequest(
                patient_id=patient.id,
                kind=alert.kind,
                expected=AlertState.AWAITING_CHECKIN,
                target=AlertState.ESCALATED,
                reason="no_response",
                alert_id=alert.id,
            ),
            now=now,
        )
        if result.alert.state == AlertState.ESCALATED:
            await self._notify(result.alert, RecipientKind.CAREGIVER, 0, patient, config, summary)

    async def _check_escalated(
        self,
        patient: Patient,
        config: MonitoringConfig,
        alert: Alert,
        now: datetime,
        summary: TickSummary,
    ) -> None:
        entered = ensure_utc(alert.state_entered_at)
        latest_ack = await self._store.latest_activity_for_alert(
            patient.id, alert.id, ActivitySource.EXPLICIT_ACKNOWLEDGMENT
        )
        if latest_ack is not None and ensure_utc(latest_ack.timestamp) > entered:
            result = await self._state_machine.apply(
                TransitionRequest(
                    patient_id=patient.id,
                    kind=alert.kind,
                    expected=AlertState.ESCALATED,
                    target=AlertState.RESOLVED,
                    reason="acknowledged",
                    alert_id=alert.id,
                    causing_activity_id=latest_ack.id,
                    actor=latest_ack.actor,
                ),
                now=now,
            )
            if result.applied:
                summary.resolved += 1
            return

        recipient = (
            config.immediate_escalation_recipient
            if config.bypasses_soft_stage(alert.kind)
            else RecipientKind.CAREGIVER
        )
        await self._notify(alert, recipient, 0, patient, config, summary)

        due_round = config.reminder_round((now - entered).total_seconds())
        for round in range(1, due_round + 1):
            await self._notify(alert, recipient, round, patient, config, summary)

    async def _notify(
        self,
        alert: Alert,
        recipient: RecipientKind,
        round: int,
        patient: Patient,
        config: MonitoringConfig,
        summary: TickSummary,
    ) -> None:
        result = await self._dispatcher.dispatch(
            alert, recipient, round=round, patient=patient, config=config
        )
        if result.status == DispatchStatus.SENT:
            if recipient == RecipientKind.PATIENT and alert.kind == AlertKind.PROLONGED_INACTIVITY:
                summary.check_ins_sent += 1
            else:
                summary.escalations_sent += 1
        elif result.status in (
            DispatchStatus.FAILED,
            DispatchStatus.EXHAUSTED,
            DispatchStatus.SKIPPED,
        ):
            summary.errors.append(
                TickError(
                    patient_id=patient.id,
                    alert_id=alert.id,
                    error=f"notification {result.status.value}: {result.error or 'unknown'}",
                )
            )
