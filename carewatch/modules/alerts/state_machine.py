from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog

from carewatch.core.errors import InvalidTransitionError, NotFoundError
from carewatch.modules.alerts.models import (
    Alert,
    AlertNote,
    AlertResolution,
    TransitionRequest,
    TransitionResult,
)
from carewatch.shared.constants import AlertKind, AlertState, Severity
from carewatch.shared.schemas import utc_now
from carewatch.store.base import EngineStore

log = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[AlertState, frozenset[AlertState]] = {
    AlertState.NORMAL: frozenset({AlertState.AWAITING_CHECKIN, AlertState.ESCALATED}),
    AlertState.AWAITING_CHECKIN: frozenset(
        {AlertState.ESCALATED, AlertState.RESOLVED, AlertState.FALSE_ALARM}
    ),
    AlertState.ESCALATED: frozenset({AlertState.RESOLVED, AlertState.FALSE_ALARM}),
    AlertState.RESOLVED: frozenset(),
    AlertState.FALSE_ALARM: frozenset(),
}

# Operator actions re-read the row and retry when a concurrent tick moved it first.
_MAX_OPERATOR_RETRIES = 3


def severity_for(kind: AlertKind, state: AlertState) -> Severity:
    if kind == AlertKind.FALL_DETECTED:
        return Severity.CRITICAL
    if state == AlertState.ESCALATED:
        return Severity.HIGH
    return Severity.MEDIUM


def check_transition(current: AlertState, target: AlertState) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"cannot move alert from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


class AlertStateMachine:
    """
    Owns the per-patient alert lifecycle.

    Every write is a compare-and-set against the store: opening an alert succeeds only
    when no non-terminal alert exists for (patient, kind), and moving an alert succeeds
    only from the state the caller expected. Losing either race is reported through
    ``TransitionResult.applied`` and is never an error.
    """

    def __init__(self, store: EngineStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def apply(
        self,
        request: TransitionRequest,
        now: datetime | None = None,
        location: str | None = None,
        message: str | None = None,
    ) -> TransitionResult:
        check_transition(request.expected, request.target)
        now = now or self._clock()
        if request.expected == AlertState.NORMAL:
            return await self._open(request, now, location=location, message=message)
        return await self._move(request, now)

    async def escalate_immediately(
        self,
        patient_id: str,
        kind: AlertKind = AlertKind.FALL_DETECTED,
        location: str | None = None,
        message: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Open an alert straight in ESCALATED, skipping the check-in stage."""
        request = TransitionRequest(
            patient_id=patient_id,
            kind=kind,
            expected=AlertState.NORMAL,
            target=AlertState.ESCALATED,
            reason="immediate_escalation",
        )
        return await self.apply(request, now=now, location=location, message=message)

    async def acknowledge(
        self, alert_id: str, actor: str, note: str | None = None, now: datetime | None = None
    ) -> TransitionResult:
        return await self._operator_close(
            alert_id, AlertState.RESOLVED, "acknowledged", actor, note, now
        )

    async def mark_false_alarm(
        self, alert_id: str, actor: str, note: str | None = None, now: datetime | None = None
    ) -> TransitionResult:
        return await self._operator_close(
            alert_id, AlertState.FALSE_ALARM, "false_alarm", actor, note, now
        )

    async def add_note(self, alert_id: str, text: str, author: str | None = None) -> Alert:
        alert = await self._store.append_alert_note(alert_id, AlertNote(author=author, text=text))
        if alert is None:
            raise NotFoundError("alert not found", alert_id=alert_id)
        return alert

    async def _open(
        self,
        request: TransitionRequest,
        now: datetime,
        location: str | None,
        message: str | None,
    ) -> TransitionResult:
        alert = Alert(
            patient_id=request.patient_id,
            kind=request.kind,
            severity=severity_for(request.kind, request.target),
            state=request.target,
            state_entered_at=now,
            created_at=now,
            causing_activity_id=request.causing_activity_id,
            silence_baseline_at=request.silence_baseline_at,
            location=location,
            message=message,
        )
        stored, created = await self._store.create_alert_if_none_active(alert)
        if created:
            log.info(
                "alert.opened",
                alert_id=stored.id,
                patient_id=stored.patient_id,
                kind=stored.kind.value,
                state=stored.state.value,
                reason=request.reason,
            )
        else:
            log.info(
                "alert.open_skipped",
                alert_id=stored.id,
                patient_id=stored.patient_id,
                kind=stored.kind.value,
                existing_state=stored.state.value,
            )
        return TransitionResult(alert=stored, applied=created)

    async def _move(self, request: TransitionRequest, now: datetime) -> TransitionResult:
        if not request.alert_id:
            raise InvalidTransitionError("alert_id is required to move an existing alert")

        changes: dict[str, Any] = {
            "state": request.target,
            "state_entered_at": now,
            "active": not request.target.is_terminal,
            "severity": severity_for(request.kind, request.target),
        }
        if request.causing_activity_id is not None:
            changes["causing_activity_id"] = request.causing_activity_id
        if request.target.is_terminal:
            changes["resolution"] = AlertResolution(
                resolved_by=request.actor, resolved_at=now, reason=request.reason
            )

        updated = await self._store.transition_alert(request.alert_id, request.expected, changes)
        if updated is not None:
            log.info(
                "alert.transitioned",
                alert_id=updated.id,
                patient_id=updated.patient_id,
                from_state=request.expected.value,
                to_state=updated.state.value,
                reason=request.reason,
            )
            return TransitionResult(alert=updated, applied=True)

        current = await self._store.get_alert(request.alert_id)
        if current is None:
            raise NotFoundError("alert not found", alert_id=request.alert_id)
        log.info(
            "alert.transition_skipped",
            alert_id=current.id,
            expected=request.expected.value,
            target=request.target.value,
            current=current.state.value,
        )
        return TransitionResult(alert=current, applied=False)

    async def _operator_close(
        self,
        alert_id: str,
        target: AlertState,
        reason: str,
        actor: str,
        note: str | None,
        now: datetime | None,
    ) -> TransitionResult:
        result: TransitionResult | None = None
        for _ in range(_MAX_OPERATOR_RETRIES):
            alert = await self._store.get_alert(alert_id)
            if alert is None:
                raise NotFoundError("alert not found", alert_id=alert_id)
            if alert.is_terminal:
                # Closing twice is a no-op; the note is still kept.
                result = TransitionResult(alert=alert, applied=False)
                break
            request = TransitionRequest(
                patient_id=alert.patient_id,
                kind=alert.kind,
                expected=alert.state,
                target=target,
                reason=reason,
                alert_id=alert.id,
                actor=actor,
            )
            result = await self.apply(request, now=now)
            if result.applied:
                break
        if result is None or (not result.applied and not result.alert.is_terminal):
            raise InvalidTransitionError("alert kept changing state; retry", alert_id=alert_id)
        if note:
            result = TransitionResult(
                alert=await self.add_note(alert_id, note, author=actor), applied=result.applied
            )
        return result
