from datetime import timedelta

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_ignored_device_type(client: AsyncClient, sensor_event, store) -> None:
    response = await client.post("/api/v1/sensors/webhook", json=sensor_event(device_type="WoHand"))

    assert response.status_code == 200
    assert response.json() == {"success": True, "status": "ignored"}
    assert store.activity == []


@pytest.mark.asyncio
async def test_motion_event_accepted(client: AsyncClient, patient, sensor_event, store) -> None:
    response = await client.post("/api/v1/sensors/webhook", json=sensor_event())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "accepted"
    assert body["patientId"] == patient.id
    assert body["activityId"] == store.activity[0].id


@pytest.mark.asyncio
async def test_invalid_json_is_rejected(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/sensors/webhook",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_invalid_payload_lists_details(client: AsyncClient, patient, sensor_event) -> None:
    payload = sensor_event()
    payload["context"]["detectionState"] = "SOMETIMES"

    response = await client.post("/api/v1/sensors/webhook", json=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "validation_error"
    assert any("detectionState" in detail for detail in body["details"])


@pytest.mark.asyncio
async def test_unknown_device(client: AsyncClient, sensor_event) -> None:
    response = await client.post(
        "/api/v1/sensors/webhook", json=sensor_event(device_mac="FF:FF:FF:FF:FF:FF")
    )

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_fall_event_escalates(client: AsyncClient, patient, sensor_event, sender) -> None:
    response = await client.post(
        "/api/v1/sensors/webhook", json=sensor_event(state="FALL_DETECTED")
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "escalated"
    assert body["notification"] == "sent"
    assert sender.calls == 1


@pytest.mark.asyncio
async def test_rate_limited_per_forwarded_ip(client: AsyncClient, sensor_event) -> None:
    payload = sensor_event(device_type="WoHand")
    headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
    for _ in range(100):
        assert (await client.post("/api/v1/sensors/webhook", json=payload, headers=headers)).status_code == 200

    response = await client.post("/api/v1/sensors/webhook", json=payload, headers=headers)

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "rate_limited"
    assert 1 <= body["retryAfter"] <= 60
    assert response.headers["Retry-After"] == str(body["retryAfter"])

    other = await client.post(
        "/api/v1/sensors/webhook", json=payload, headers={"X-Forwarded-For": "203.0.113.10"}
    )
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_future_sample_time_is_rejected(client: AsyncClient, patient, sensor_event, store, clock) -> None:
    response = await client.post(
        "/api/v1/sensors/webhook", json=sensor_event(at=clock.now + timedelta(days=1))
    )

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"
    assert store.activity == []


@pytest.mark.asyncio
async def test_small_clock_skew_is_accepted(client: AsyncClient, patient, sensor_event, store, clock) -> None:
    response = await client.post(
        "/api/v1/sensors/webhook", json=sensor_event(at=clock.now + timedelta(seconds=60))
    )

    assert response.status_code == 200
    assert store.activity[0].timestamp == clock.now + timedelta(seconds=60)
