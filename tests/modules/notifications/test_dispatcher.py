import asyncio
from datetime import timedelta

import pytest

from carewatch.modules.alerts.state_machine import AlertStateMachine
from carewatch.modules.monitoring.config import MonitoringConfig
from carewatch.modules.notifications.dispatcher import DispatchStatus, NotificationDispatcher
from carewatch.modules.notifications.models import NotificationAttempt
from carewatch.modules.patients.models import CaregiverContact, ContactRoutes, Patient
from carewatch.shared.constants import AttemptOutcome, Channel, RecipientKind


@pytest.fixture
def dispatcher(store, sender, rules, clock) -> NotificationDispatcher:
    return NotificationDispatcher(store, {Channel.WEBHOOK: sender}, lambda: rules, clock=clock)


@pytest.fixture
async def fall_alert(store, patient, clock):
    result = await AlertStateMachine(store, clock=clock).escalate_immediately(
        patient.id, location="Kitchen"
    )
    return result.alert


@pytest.mark.asyncio
async def test_concurrent_dispatch_sends_once(dispatcher, sender, fall_alert, store) -> None:
    sender.delay = 0.01

    results = await asyncio.gather(
        *[dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER) for _ in range(5)]
    )

    statuses = sorted(result.status.value for result in results)
    assert statuses.count("sent") == 1
    assert statuses.count("deduplicated") == 4
    assert sender.calls == 1
    attempts = await store.list_attempts(fall_alert.id)
    assert [(a.attempt_number, a.outcome) for a in attempts] == [(1, AttemptOutcome.SENT)]


@pytest.mark.asyncio
async def test_message_is_routed_to_active_caregivers(dispatcher, sender, fall_alert, patient) -> None:
    result = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.SENT
    message = sender.sent[0]
    assert message.template == "fall_report"
    assert message.recipient_kind == RecipientKind.CAREGIVER
    assert [r.address for r in message.recipients] == ["family-margaret@example.com"]
    assert "Kitchen" in message.text
    assert patient.display_name in message.subject


@pytest.mark.asyncio
async def test_failures_are_retried_until_exhausted(dispatcher, sender, fall_alert, store) -> None:
    sender.fail_next = 10

    first = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)
    second = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)
    third = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)
    fourth = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)

    assert [first.status, second.status, third.status] == [
        DispatchStatus.FAILED,
        DispatchStatus.FAILED,
        DispatchStatus.EXHAUSTED,
    ]
    assert fourth.status == DispatchStatus.EXHAUSTED
    assert sender.calls == 3
    attempts = await store.list_attempts(fall_alert.id)
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert all(a.outcome == AttemptOutcome.FAILED for a in attempts)
    assert attempts[0].error == "provider down"


@pytest.mark.asyncio
async def test_retry_after_failure_succeeds(dispatcher, sender, fall_alert, store) -> None:
    sender.fail_next = 1

    assert (await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)).status == DispatchStatus.FAILED
    assert (await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)).status == DispatchStatus.SENT
    assert (await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)).status == DispatchStatus.DEDUPLICATED

    outcomes = [a.outcome for a in await store.list_attempts(fall_alert.id)]
    assert outcomes == [AttemptOutcome.FAILED, AttemptOutcome.SENT]


@pytest.mark.asyncio
async def test_send_timeout_records_failure(store, sender, rules, clock, fall_alert) -> None:
    dispatcher = NotificationDispatcher(
        store, {Channel.WEBHOOK: sender}, lambda: rules, send_timeout_seconds=0.01, clock=clock
    )
    sender.delay = 1

    result = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.FAILED
    assert result.error == "timeout"
    assert (await store.list_attempts(fall_alert.id))[0].outcome == AttemptOutcome.FAILED


@pytest.mark.asyncio
async def test_fresh_pending_attempt_means_in_flight(dispatcher, sender, fall_alert, store, clock) -> None:
    await store.claim_attempt(
        NotificationAttempt(
            alert_id=fall_alert.id,
            recipient_kind=RecipientKind.CAREGIVER,
            attempt_number=1,
            created_at=clock.now - timedelta(seconds=10),
        )
    )

    result = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.IN_FLIGHT
    assert sender.calls == 0


@pytest.mark.asyncio
async def test_stale_pending_attempt_is_failed_and_replaced(dispatcher, sender, fall_alert, store, clock) -> None:
    await store.claim_attempt(
        NotificationAttempt(
            alert_id=fall_alert.id,
            recipient_kind=RecipientKind.CAREGIVER,
            attempt_number=1,
            created_at=clock.now - timedelta(seconds=600),
        )
    )

    result = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.SENT
    attempts = await store.list_attempts(fall_alert.id)
    assert [(a.attempt_number, a.outcome, a.error) for a in attempts] == [
        (1, AttemptOutcome.FAILED, "stale"),
        (2, AttemptOutcome.SENT, None),
    ]


@pytest.mark.asyncio
async def test_reminder_rounds_are_independent(dispatcher, sender, fall_alert) -> None:
    assert (await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER)).status == DispatchStatus.SENT
    reminder = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER, round=1)

    assert reminder.status == DispatchStatus.SENT
    assert sender.sent[1].subject.startswith("Reminder 1:")
    assert sender.sent[1].template == "fall_report_reminder"


@pytest.mark.asyncio
async def test_missing_caregivers_skips_without_attempt(dispatcher, sender, store, make_patient, clock) -> None:
    lonely = make_patient("Walter", caregivers=False)
    alert = (await AlertStateMachine(store, clock=clock).escalate_immediately(lonely.id)).alert

    result = await dispatcher.dispatch(alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.SKIPPED
    assert sender.calls == 0
    assert await store.list_attempts(alert.id) == []


@pytest.mark.asyncio
async def test_per_call_config_caps_attempts(dispatcher, sender, fall_alert) -> None:
    sender.fail_next = 1
    config = MonitoringConfig(
        soft_threshold_seconds=30, escalation_window_seconds=60, max_notification_attempts=1
    )

    result = await dispatcher.dispatch(fall_alert, RecipientKind.CAREGIVER, config=config)

    assert result.status == DispatchStatus.EXHAUSTED


@pytest.fixture
def mixed_patient(store, clock) -> Patient:
    return store.add_patient(
        Patient(
            display_name="Harold",
            caregivers=[
                CaregiverContact(name="Daniel", contact=ContactRoutes(email="daniel@example.com")),
                CaregiverContact(
                    name="Ruth",
                    contact=ContactRoutes(telegram_chat_id="555", preferred_channel=Channel.TELEGRAM),
                ),
            ],
            monitoring_since=clock.now,
        )
    )


@pytest.fixture
def two_channel_dispatcher(store, sender, telegram_sender, rules, clock) -> NotificationDispatcher:
    return NotificationDispatcher(
        store,
        {Channel.WEBHOOK: sender, Channel.TELEGRAM: telegram_sender},
        lambda: rules,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_each_caregiver_is_reached_on_their_own_channel(
    two_channel_dispatcher, sender, telegram_sender, mixed_patient, store, clock
) -> None:
    alert = (await AlertStateMachine(store, clock=clock).escalate_immediately(mixed_patient.id)).alert

    result = await two_channel_dispatcher.dispatch(alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.SENT
    assert [(r.name, r.address) for r in sender.sent[0].recipients] == [("Daniel", "daniel@example.com")]
    assert [(r.name, r.address) for r in telegram_sender.sent[0].recipients] == [("Ruth", "555")]
    assert result.attempt is not None
    assert result.attempt.delivered_to == ["Daniel", "Ruth"]
    assert result.attempt.channel is None


@pytest.mark.asyncio
async def test_preferred_channel_failure_falls_back_to_another_channel(
    two_channel_dispatcher, sender, telegram_sender, store, clock
) -> None:
    patient = store.add_patient(
        Patient(
            display_name="Irene",
            caregivers=[
                CaregiverContact(
                    name="Ruth",
                    contact=ContactRoutes(
                        telegram_chat_id="555",
                        email="ruth@example.com",
                        preferred_channel=Channel.TELEGRAM,
                    ),
                )
            ],
            monitoring_since=clock.now,
        )
    )
    alert = (await AlertStateMachine(store, clock=clock).escalate_immediately(patient.id)).alert
    telegram_sender.fail_next = 1

    result = await two_channel_dispatcher.dispatch(alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.SENT
    assert telegram_sender.calls == 1
    assert [r.address for r in sender.sent[0].recipients] == ["ruth@example.com"]
    assert result.attempt is not None
    assert result.attempt.channel == Channel.WEBHOOK


@pytest.mark.asyncio
async def test_partial_failure_retries_only_unreached_caregivers(
    two_channel_dispatcher, sender, telegram_sender, mixed_patient, store, clock
) -> None:
    alert = (await AlertStateMachine(store, clock=clock).escalate_immediately(mixed_patient.id)).alert
    telegram_sender.fail_next = 1

    first = await two_channel_dispatcher.dispatch(alert, RecipientKind.CAREGIVER)
    second = await two_channel_dispatcher.dispatch(alert, RecipientKind.CAREGIVER)

    assert first.status == DispatchStatus.FAILED
    assert first.error == "Ruth: provider down"
    assert second.status == DispatchStatus.SENT
    assert sender.calls == 1
    assert telegram_sender.calls == 2
    assert [r.name for r in telegram_sender.sent[0].recipients] == ["Ruth"]
    attempts = await store.list_attempts(alert.id)
    assert [(a.outcome, a.delivered_to) for a in attempts] == [
        (AttemptOutcome.FAILED, ["Daniel"]),
        (AttemptOutcome.SENT, ["Daniel", "Ruth"]),
    ]


@pytest.mark.asyncio
async def test_caregiver_without_any_route_fails_the_attempt(
    dispatcher, sender, store, clock
) -> None:
    patient = store.add_patient(
        Patient(
            display_name="Oscar",
            caregivers=[
                CaregiverContact(name="Daniel", contact=ContactRoutes(email="daniel@example.com")),
                CaregiverContact(name="Ruth", contact=ContactRoutes(telegram_chat_id="555")),
            ],
            monitoring_since=clock.now,
        )
    )
    alert = (await AlertStateMachine(store, clock=clock).escalate_immediately(patient.id)).alert

    result = await dispatcher.dispatch(alert, RecipientKind.CAREGIVER)

    assert result.status == DispatchStatus.FAILED
    assert result.error == "Ruth: no reachable channel"
    assert [r.name for r in sender.sent[0].recipients] == ["Daniel"]
