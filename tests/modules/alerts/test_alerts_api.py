import pytest
from httpx import AsyncClient

from carewatch.shared.constants import ActivitySource, AlertState


async def _report_fall(client: AsyncClient, headers: dict[str, str], **overrides) -> dict:
    payload = {"patient_email": "margaret@example.com", "location": "Bathroom", **overrides}
    response = await client.post("/api/v1/alerts/fall-report", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_fall_report_requires_service_token(client: AsyncClient, patient) -> None:
    response = await client.post(
        "/api/v1/alerts/fall-report",
        json={"patient_email": "margaret@example.com", "location": "Bathroom"},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_fall_report_escalates_and_notifies_once(
    client: AsyncClient, service_headers, patient, store, sender
) -> None:
    first = await _report_fall(client, service_headers, message="Found on the floor")
    second = await _report_fall(client, service_headers)

    assert first["newAlert"] is True
    assert first["notification"] == "sent"
    assert second["newAlert"] is False
    assert second["alertId"] == first["alertId"]
    assert second["notification"] == "deduplicated"
    assert sender.calls == 1
    assert sender.sent[0].text == "Found on the floor"
    assert store.alerts[first["alertId"]].state == AlertState.ESCALATED


@pytest.mark.asyncio
async def test_fall_report_by_phone(client: AsyncClient, service_headers, patient) -> None:
    body = await _report_fall(
        client, service_headers, patient_email=None, patient_phone=patient.contact.phone
    )

    assert body["newAlert"] is True


@pytest.mark.asyncio
async def test_fall_report_unknown_patient(client: AsyncClient, service_headers, patient) -> None:
    response = await client.post(
        "/api/v1/alerts/fall-report",
        json={"patient_email": "nobody@example.com", "location": "Hall"},
        headers=service_headers,
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_fall_report_needs_a_contact(client: AsyncClient, service_headers) -> None:
    response = await client.post(
        "/api/v1/alerts/fall-report", json={"location": "Hall"}, headers=service_headers
    )

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_fall_report_is_rate_limited(client: AsyncClient, service_headers) -> None:
    payload = {"patient_email": "nobody@example.com", "location": "Hall"}
    for _ in range(10):
        response = await client.post("/api/v1/alerts/fall-report", json=payload, headers=service_headers)
        assert response.status_code == 404

    response = await client.post("/api/v1/alerts/fall-report", json=payload, headers=service_headers)

    assert response.status_code == 429
    assert "Retry-After" in response.headers


@pytest.mark.asyncio
async def test_acknowledge_resolves_and_records_activity(
    client: AsyncClient, service_headers, patient, store
) -> None:
    alert_id = (await _report_fall(client, service_headers))["alertId"]

    response = await client.post(
        f"/api/v1/alerts/{alert_id}/acknowledge",
        json={"actor": "daughter", "note": "She is fine, slipped on a rug"},
        headers=service_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["applied"] is True
    assert body["alert"]["state"] == "resolved"
    assert body["alert"]["resolution"]["resolvedBy"] == "daughter"
    assert body["alert"]["notes"][0]["text"] == "She is fine, slipped on a rug"
    assert [r.source for r in store.activity] == [ActivitySource.EXPLICIT_ACKNOWLEDGMENT]

    again = await client.post(
        f"/api/v1/alerts/{alert_id}/acknowledge", json={"actor": "daughter"}, headers=service_headers
    )
    assert again.json()["applied"] is False


@pytest.mark.asyncio
async def test_false_alarm(client: AsyncClient, service_headers, patient) -> None:
    alert_id = (await _report_fall(client, service_headers))["alertId"]

    response = await client.post(
        f"/api/v1/alerts/{alert_id}/false-alarm", json={"actor": "operator"}, headers=service_headers
    )

    assert response.status_code == 200
    assert response.json()["alert"]["state"] == "false_alarm"


@pytest.mark.asyncio
async def test_alert_detail_includes_attempts(client: AsyncClient, service_headers, patient) -> None:
    alert_id = (await _report_fall(client, service_headers))["alertId"]

    response = await client.get(f"/api/v1/alerts/{alert_id}", headers=service_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["alert"]["kind"] == "fall_detected"
    assert body["alert"]["severity"] == "critical"
    assert [(a["recipientKind"], a["outcome"]) for a in body["attempts"]] == [("caregiver", "sent")]


@pytest.mark.asyncio
async def test_unknown_alert(client: AsyncClient, service_headers) -> None:
    response = await client.get("/api/v1/alerts/does-not-exist", headers=service_headers)
    assert response.status_code == 404

    response = await client.post(
        "/api/v1/alerts/does-not-exist/acknowledge", json={"actor": "x"}, headers=service_headers
    )
    assert response.status_code == 404
