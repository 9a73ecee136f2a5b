"""
Sensor webhook ingestion.

Vendors post events for every device on an account; only the monitored device types
are turned into activity. Fall detections skip the check-in stage and go straight to
the alert state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from carewatch.core.errors import NotFoundError, ValidationError
from carewatch.core.rate_limit import RateLimiter
from carewatch.modules.activity.service import ActivitySink
from carewatch.modules.alerts.state_machine import AlertStateMachine
from carewatch.modules.monitoring.config import MonitoringRules
from carewatch.modules.notifications.dispatcher import NotificationDispatcher
from carewatch.modules.sensors.schemas import (
    DetectionState,
    SensorEventStatus,
    SensorWebhookPayload,
)
from carewatch.shared.constants import ActivitySource, AlertKind
from carewatch.store.base import EngineStore

log = structlog.get_logger()


@dataclass(frozen=True)
class SensorEventOutcome:
    status: SensorEventStatus
    patient_id: Optional[str] = None
    activity_id: Optional[str] = None
    alert_id: Optional[str] = None
    notification: Optional[str] = None


def _format_errors(exc: PydanticValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]


class SensorEventNormalizer:
    def __init__(
        self,
        store: EngineStore,
        sink: ActivitySink,
        state_machine: AlertStateMachine,
        dispatcher: NotificationDispatcher,
        rate_limiter: RateLimiter,
        rules_loader: Callable[[], MonitoringRules],
        device_types: Iterable[str] = ("WoPresence",),
        rate_limit: int = 100,
        rate_window_seconds: float = 60,
    ) -> None:
        self._store = store
        self._sink = sink
        self._state_machine = state_machine
        self._dispatcher = dispatcher
        self._rate_limiter = rate_limiter
        self._rules_loader = rules_loader
        self._device_types = frozenset(device_types)
        self._rate_limit = rate_limit
        self._rate_window_seconds = rate_window_seconds

    async def ingest(self, payload: Any, sender: str) -> SensorEventOutcome:
        await self._rate_limiter.enforce(
            f"sensor:{sender}", self._rate_limit, self._rate_window_seconds
        )

        device_type = self._device_type(payload)
        if device_type not in self._device_types:
            log.info(
                "sensor.ignored",
                device_type=device_type,
                device_mac=payload["context"].get("deviceMac"),
            )
            return SensorEventOutcome(SensorEventStatus.IGNORED)

        try:
            event = SensorWebhookPayload.model_validate(payload)
        except PydanticValidationError as exc:
            errors = _format_errors(exc)
            log.warning("sensor.rejected", reason="invalid_payload", errors=errors)
            raise ValidationError("Invalid webhook payload structure", errors=errors) from exc

        context = event.context
        device = await self._store.find_device(context.device_mac)
        if device is None or not device.active:
            log.warning("sensor.rejected", reason="unknown_device", device_mac=context.device_mac)
            raise NotFoundError("Device not registered", device_mac=context.device_mac)

        bound = log.bind(
            patient_id=device.patient_id,
            device_mac=context.device_mac,
            detection_state=context.detection_state.value,
        )

        if context.detection_state == DetectionState.NOT_DETECTED:
            bound.info("sensor.absence")
            return SensorEventOutcome(SensorEventStatus.ABSENCE, patient_id=device.patient_id)

        if context.detection_state == DetectionState.DETECTED:
            record = await self._sink.record(
                device.patient_id,
                ActivitySource.SENSOR,
                timestamp=context.sampled_at,
                detail=f"{device.device_name} detected motion",
                device_mac=context.device_mac,
            )
            bound.info("sensor.accepted", activity_id=record.id)
            return SensorEventOutcome(
                SensorEventStatus.ACCEPTED, patient_id=device.patient_id, activity_id=record.id
            )

        return await self._escalate_fall(device.patient_id, device.location, bound)

    async def _escalate_fall(
        self, patient_id: str, location: str | None, bound: Any
    ) -> SensorEventOutcome:
        patient = await self._store.get_patient(patient_id)
        if patient is None:
            raise NotFoundError("Patient not found", patient_id=patient_id)
        config = self._rules_loader().for_patient(patient.config_override)

        result = await self._state_machine.escalate_immediately(
            patient_id, kind=AlertKind.FALL_DETECTED, location=location
        )
        dispatch = await self._dispatcher.dispatch(
            result.alert,
            config.immediate_escalation_recipient,
            patient=patient,
            config=config,
        )
        bound.warning(
            "sensor.escalated",
            alert_id=result.alert.id,
            new_alert=result.applied,
            notification=dispatch.status.value,
        )
        return SensorEventOutcome(
            SensorEventStatus.ESCALATED,
            patient_id=patient_id,
            alert_id=result.alert.id,
            notification=dispatch.status.value,
        )

    @staticmethod
    def _device_type(payload: Any) -> str:
        context = payload.get("context") if isinstance(payload, dict) else None
        device_type = context.get("deviceType") if isinstance(context, dict) else None
        if not isinstance(device_type, str):
            log.warning("sensor.rejected", reason="missing_device_type")
            raise ValidationError(
                "Invalid webhook payload structure",
                errors=["context.deviceType: must be a string"],
            )
        return device_type
