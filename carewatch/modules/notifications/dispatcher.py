"""
Notification dispatch.

The dispatcher turns "this alert needs its notification" into at most one successful
send per (alert, recipient kind, round). It only reads alerts: a failed or slow channel
is recorded on the attempt and retried by a later tick, the alert keeps its state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from carewatch.modules.alerts.models import Alert
from carewatch.modules.monitoring.config import MonitoringConfig, MonitoringRules
from carewatch.modules.notifications import templates
from carewatch.modules.notifications.channels import (
    OutboundMessage,
    Recipient,
    Sender,
    SendResult,
)
from carewatch.modules.notifications.idempotency import (
    ClaimStatus,
    DispatchKey,
    IdempotencyGuard,
)
from carewatch.modules.notifications.models import NotificationAttempt
from carewatch.modules.patients.models import ContactRoutes, Patient
from carewatch.shared.constants import AttemptOutcome, Channel, RecipientKind
from carewatch.shared.schemas import utc_now
from carewatch.store.base import EngineStore

log = structlog.get_logger()


class DispatchStatus(str, Enum):
    SENT = "sent"
    DEDUPLICATED = "deduplicated"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    attempt: Optional[NotificationAttempt] = None
    error: Optional[str] = None

    @property
    def sent_now(self) -> bool:
        return self.status == DispatchStatus.SENT


@dataclass
class _FanOut:
    delivered: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    channels: set[Channel] = field(default_factory=set)
    provider_ids: list[str] = field(default_factory=list)


_CLAIM_TO_STATUS = {
    ClaimStatus.ALREADY_SENT: DispatchStatus.DEDUPLICATED,
    ClaimStatus.IN_FLIGHT: DispatchStatus.IN_FLIGHT,
    ClaimStatus.EXHAUSTED: DispatchStatus.EXHAUSTED,
}


def _address(contact: ContactRoutes, channel: Channel) -> str | None:
    if channel == Channel.TELEGRAM:
        return contact.telegram_chat_id
    if channel == Channel.WEBHOOK:
        return contact.webhook_recipient or contact.email or contact.phone
    return contact.email or contact.phone


class NotificationDispatcher:
    def __init__(
        self,
        store: EngineStore,
        senders: dict[Channel, Sender],
        rules_loader: Callable[[], MonitoringRules],
        send_timeout_seconds: float = 20.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not senders:
            raise ValueError("at least one sender is required")
        self._store = store
        self._senders = senders
        self._rules_loader = rules_loader
        self._send_timeout = send_timeout_seconds
        self._clock = clock
        self.guard = IdempotencyGuard(store)

    async def dispatch(
        self,
        alert: Alert,
        recipient_kind: RecipientKind,
        round: int = 0,
        patient: Patient | None = None,
        config: MonitoringConfig | None = None,
    ) -> DispatchResult:
        bound = log.bind(alert_id=alert.id, recipient_kind=recipient_kind.value, round=round)

        if patient is None:
            patient = await self._store.get_patient(alert.patient_id)
        if patient is None:
            bound.warning("notification.skipped", reason="patient_not_found")
            return DispatchResult(DispatchStatus.SKIPPED, error="patient not found")
        if config is None:
            config = self._rules_loader().for_patient(patient.config_override)

        contacts = self._contacts(patient, recipient_kind)
        if not contacts:
            bound.warning("notification.skipped", reason="no_recipient")
            return DispatchResult(
                DispatchStatus.SKIPPED, error=f"no active {recipient_kind.value} contact"
            )

        key = DispatchKey(alert.id, recipient_kind, round)

        async with self.guard.hold(key):
            now = self._clock()
            claim = await self.guard.claim(
                key,
                now,
                max_attempts=config.max_notification_attempts,
                pending_timeout_seconds=config.pending_attempt_timeout_seconds,
            )
            attempt = claim.attempt
            if claim.status != ClaimStatus.CLAIMED or attempt is None:
                status = _CLAIM_TO_STATUS.get(claim.status, DispatchStatus.IN_FLIGHT)
                bound.info("notification.not_sent", status=status.value, failures=claim.failures)
                return DispatchResult(
                    status,
                    attempt=attempt,
                    error=attempt.error if attempt else None,
                )

            rendered = templates.render(alert, patient, recipient_kind, now, round=round)
            message = OutboundMessage(
                alert_id=alert.id,
                patient_id=patient.id,
                recipient_kind=recipient_kind,
                recipients=[],
                subject=rendered.subject,
                text=rendered.text,
                template=rendered.template,
                metadata={
                    "kind": alert.kind.value,
                    "severity": alert.severity.value,
                    "state": alert.state.value,
                    "round": round,
                    "location": alert.location,
                },
            )
            pending = [(name, route) for name, route in contacts if name not in claim.delivered]
            fanout = await self._fan_out(message, pending, bound)
            return await self._record(attempt, claim.delivered, fanout, len(contacts), config, bound)

    async def _fan_out(
        self,
        message: OutboundMessage,
        contacts: list[tuple[str, ContactRoutes]],
        bound: structlog.stdlib.BoundLogger,
    ) -> _FanOut:
        """
        Send ``message`` to every contact, each over its own channel.

        A contact is tried on its preferred channel first, then on the other configured
        channels that can reach it, until one delivers or none is left.
        """
        fanout = _FanOut()
        options: dict[str, list[tuple[Channel, Recipient]]] = {}
        for name, route in contacts:
            routed = [
                (channel, Recipient(name=name, address=_address(route, channel)))
                for channel in self._channel_order(route)
            ]
            options[name] = [
                (channel, recipient)
                for channel, recipient in routed
                if self._senders[channel].accepts(recipient)
            ]
            if not options[name]:
                fanout.errors[name] = "no reachable channel"

        while True:
            groups: dict[Channel, list[Recipient]] = {}
            for remaining in options.values():
                if remaining:
                    channel, recipient = remaining.pop(0)
                    groups.setdefault(channel, []).append(recipient)
            if not groups:
                return fanout

            for channel, recipients in groups.items():
                result = await self._send(
                    self._senders[channel], replace(message, recipients=recipients)
                )
                missed = set(result.undelivered)
                if not result.success and not missed:
                    missed = {recipient.name for recipient in recipients}
                if result.provider_message_id:
                    fanout.provider_ids.append(result.provider_message_id)
                for recipient in recipients:
                    if recipient.name in missed:
                        fanout.errors[recipient.name] = result.error or "unknown"
                        continue
                    fanout.errors.pop(recipient.name, None)
                    fanout.delivered.append(recipient.name)
                    fanout.channels.add(channel)
                    options[recipient.name] = []
                if missed:
                    bound.warning(
                        "notification.channel_failed",
                        channel=channel.value,
                        undelivered=sorted(missed),
                        error=result.error,
                    )

    async def _send(self, sender: Sender, message: OutboundMessage) -> SendResult:
        try:
            return await asyncio.wait_for(sender.send(message), timeout=self._send_timeout)
        except asyncio.TimeoutError:
            return SendResult(success=False, error="timeout")
        except Exception as exc:
            log.exception("notification.sender_crashed", channel=sender.channel.value)
            return SendResult(success=False, error=f"sender error: {exc.__class__.__name__}")

    async def _record(
        self,
        attempt: NotificationAttempt,
        previously_delivered: frozenset[str],
        fanout: _FanOut,
        contact_count: int,
        config: MonitoringConfig,
        bound: structlog.stdlib.BoundLogger,
    ) -> DispatchResult:
        success = not fanout.errors
        if success or contact_count == 1:
            error = next(iter(fanout.errors.values()), None)
        else:
            error = "; ".join(f"{name}: {reason}" for name, reason in fanout.errors.items())
        outcome = AttemptOutcome.SENT if success else AttemptOutcome.FAILED
        completed = await self._store.complete_attempt(
            attempt.id,
            outcome,
            self._clock(),
            channel=next(iter(fanout.channels)) if len(fanout.channels) == 1 else None,
            provider_message_id=",".join(fanout.provider_ids) or None,
            error=error,
            delivered_to=sorted(previously_delivered | set(fanout.delivered)),
        )
        if completed is None:
            # Marked stale by another dispatcher while the send was running.
            bound.warning("notification.completion_lost", attempt_number=attempt.attempt_number)
            completed = attempt

        if success:
            bound.info(
                "notification.sent",
                attempt_number=attempt.attempt_number,
                channels=sorted(channel.value for channel in fanout.channels),
                recipients=fanout.delivered,
            )
            return DispatchResult(DispatchStatus.SENT, attempt=completed)

        if attempt.attempt_number >= config.max_notification_attempts:
            bound.error(
                "notification.exhausted",
                attempt_number=attempt.attempt_number,
                error=error,
            )
            return DispatchResult(DispatchStatus.EXHAUSTED, attempt=completed, error=error)

        bound.warning(
            "notification.failed",
            attempt_number=attempt.attempt_number,
            delivered=fanout.delivered,
            error=error,
        )
        return DispatchResult(DispatchStatus.FAILED, attempt=completed, error=error)

    def _contacts(
        self, patient: Patient, recipient_kind: RecipientKind
    ) -> list[tuple[str, ContactRoutes]]:
        if recipient_kind == RecipientKind.PATIENT:
            return [(patient.display_name, patient.contact)]
        return [(caregiver.name, caregiver.contact) for caregiver in patient.active_caregivers()]

    def _channel_order(self, contact: ContactRoutes) -> list[Channel]:
        order = list(self._senders)
        preferred = contact.preferred_channel
        if preferred is not None and preferred in self._senders:
            order.remove(preferred)
            order.insert(0, preferred)
        return order
