"""Message templates for check-ins, escalations, fall reports and reminders."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from carewatch.modules.alerts.models import Alert
from carewatch.modules.patients.models import Patient
from carewatch.shared.constants import AlertKind, RecipientKind
from carewatch.shared.schemas import ensure_utc

SIGNATURE = "- Carewatch"


@dataclass(frozen=True)
class RenderedMessage:
    template: str
    subject: str
    text: str


def _minutes_since(moment: datetime | None, now: datetime) -> int:
    if moment is None:
        return 0
    return max(0, int((now - ensure_utc(moment)).total_seconds() // 60))


def _describe_minutes(minutes: int) -> str:
    if minutes < 1:
        return "less than a minute"
    if minutes == 1:
        return "about 1 minute"
    return f"about {minutes} minutes"


def check_in(alert: Alert, patient: Patient, now: datetime) -> RenderedMessage:
    location = alert.location or "your home"
    silence = _describe_minutes(_minutes_since(alert.silence_baseline_at, now))
    text = (
        f"Hi {patient.display_name}!\n\n"
        f"I haven't noticed any activity in {location} for {silence}.\n\n"
        "Just checking in - are you okay? Please reply to this message if everything is fine.\n\n"
        f"{SIGNATURE}"
    )
    return RenderedMessage("check_in", "Carewatch check-in: are you okay?", text)


def escalation(alert: Alert, patient: Patient, now: datetime) -> RenderedMessage:
    location = alert.location or "unknown location"
    silence = _describe_minutes(_minutes_since(alert.silence_baseline_at, now))
    check_in_ago = _describe_minutes(_minutes_since(alert.created_at, now))
    text = (
        "URGENT ALERT - no response to check-in\n\n"
        f"Patient: {patient.display_name}\n"
        f"Location: {location}\n"
        "Status: No response to check-in\n\n"
        f"- No activity detected for {silence}\n"
        f"- Check-in message sent {check_in_ago} ago\n"
        "- No response from patient\n\n"
        f"ACTION REQUIRED: Please contact {patient.display_name} immediately "
        "or check on them in person.\n\n"
        f"{SIGNATURE}"
    )
    return RenderedMessage("escalation", f"URGENT: {patient.display_name} did not respond", text)


def fall_report(alert: Alert, patient: Patient, recipient: RecipientKind) -> RenderedMessage:
    location = alert.location or "an unknown location"
    if recipient == RecipientKind.PATIENT:
        text = (
            f"Hi {patient.display_name}, we received a fall report from {location}. "
            "Your caregivers are being contacted. If you are okay, please reply to this "
            f"message.\n\n{SIGNATURE}"
        )
        return RenderedMessage("fall_report_patient", "Carewatch: are you okay?", text)
    text = (
        "URGENT ALERT - fall reported\n\n"
        f"Patient: {patient.display_name}\n"
        f"Location: {location}\n\n"
        f"ACTION REQUIRED: Please contact {patient.display_name} immediately "
        "or check on them in person.\n\n"
        f"{SIGNATURE}"
    )
    return RenderedMessage("fall_report", f"URGENT: fall reported for {patient.display_name}", text)


def render(
    alert: Alert,
    patient: Patient,
    recipient: RecipientKind,
    now: datetime,
    round: int = 0,
) -> RenderedMessage:
    if alert.kind == AlertKind.FALL_DETECTED:
        rendered = fall_report(alert, patient, recipient)
    elif recipient == RecipientKind.PATIENT:
        rendered = check_in(alert, patient, now)
    else:
        rendered = escalation(alert, patient, now)

    if alert.message:
        # A caller-supplied message replaces the body, keeping the template subject.
        rendered = RenderedMessage(rendered.template, rendered.subject, alert.message)

    if round > 0:
        escalated_for = _describe_minutes(_minutes_since(alert.state_entered_at, now))
        rendered = RenderedMessage(
            f"{rendered.template}_reminder",
            f"Reminder {round}: {rendered.subject}",
            f"Reminder {round}: this alert is still unacknowledged after {escalated_for}.\n\n"
            f"{rendered.text}",
        )
    return rendered
