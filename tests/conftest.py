import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable

import pytest
from httpx import ASGITransport, AsyncClient

from carewatch.core.config import settings
from carewatch.engine import Engine, build_engine
from carewatch.main import app
from carewatch.modules.monitoring.config import MonitoringConfig, MonitoringRules
from carewatch.modules.notifications.channels import OutboundMessage, Recipient, SendResult
from carewatch.modules.patients.models import (
    CaregiverContact,
    ContactRoutes,
    Patient,
    SensorDevice,
)
from carewatch.shared.constants import Channel
from carewatch.store.memory import MemoryStore

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
DEVICE_MAC = "AA:BB:CC:DD:EE:01"
CRON_SECRET = "cron-secret"
SERVICE_KEY = "service-key"


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

    def at(self, seconds: float) -> datetime:
        """Jump to ``seconds`` after T0."""
        self.now = T0 + timedelta(seconds=seconds)
        return self.now


class FakeSender:
    """Records every message; can be told to fail, stall or drop named recipients."""

    def __init__(self, channel: Channel = Channel.WEBHOOK) -> None:
        self.channel = channel
        self.sent: list[OutboundMessage] = []
        self.calls = 0
        self.fail_next = 0
        self.delay = 0.0
        self.unreachable: set[str] = set()

    def accepts(self, recipient: Recipient) -> bool:
        return recipient.address is not None

    async def send(self, message: OutboundMessage) -> SendResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_next:
            self.fail_next -= 1
            return SendResult(success=False, error="provider down")
        missed = tuple(r.name for r in message.recipients if r.name in self.unreachable)
        if missed:
            return SendResult(success=False, error="recipient unreachable", undelivered=missed)
        self.sent.append(message)
        return SendResult(success=True, provider_message_id=f"msg-{len(self.sent)}")


@pytest.fixture(autouse=True)
def auth_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(settings, "SERVICE_API_KEY", SERVICE_KEY)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monitoring_config() -> MonitoringConfig:
    return MonitoringConfig(soft_threshold_seconds=30, escalation_window_seconds=60)


@pytest.fixture
def rules(monitoring_config: MonitoringConfig) -> MonitoringRules:
    return MonitoringRules(defaults=monitoring_config)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def telegram_sender() -> FakeSender:
    return FakeSender(Channel.TELEGRAM)


@pytest.fixture
def make_patient(store: MemoryStore, clock: FakeClock) -> Callable[..., Patient]:
    def _make(name: str = "Margaret", caregivers: bool = True, **kwargs: Any) -> Patient:
        slug = name.lower()
        patient = Patient(
            display_name=name,
            contact=ContactRoutes(email=f"{slug}@example.com", phone=f"+1555{len(store.patients):04d}"),
            caregivers=(
                [CaregiverContact(name=f"{name}'s daughter", contact=ContactRoutes(email=f"family-{slug}@example.com"))]
                if caregivers
                else []
            ),
            monitoring_since=clock.now,
            **kwargs,
        )
        return store.add_patient(patient)

    return _make


@pytest.fixture
def patient(make_patient: Callable[..., Patient], store: MemoryStore) -> Patient:
    patient = make_patient()
    store.add_device(
        SensorDevice(device_mac=DEVICE_MAC, patient_id=patient.id, location="Living Room")
    )
    return patient


@pytest.fixture
def engine(
    store: MemoryStore, sender: FakeSender, clock: FakeClock, rules: MonitoringRules
) -> Engine:
    return build_engine(
        settings,
        store=store,
        senders={Channel.WEBHOOK: sender},
        rules=lambda: rules,
        clock=clock,
    )


@pytest.fixture
def sensor_event(clock: FakeClock) -> Callable[..., dict[str, Any]]:
    def _event(
        state: str = "DETECTED",
        device_mac: str = DEVICE_MAC,
        device_type: str = "WoPresence",
        at: datetime | None = None,
    ) -> dict[str, Any]:
        sampled = at or clock.now
        return {
            "eventType": "changeReport",
            "eventVersion": "1",
            "context": {
                "deviceType": device_type,
                "deviceMac": device_mac,
                "detectionState": state,
                "timeOfSample": int(sampled.timestamp() * 1000),
            },
        }

    return _event


@pytest.fixture
async def client(engine: Engine) -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport does not run the lifespan, so the engine is installed directly.
    app.state.engine = engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"X-Service-Token": SERVICE_KEY}


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": CRON_SECRET}
