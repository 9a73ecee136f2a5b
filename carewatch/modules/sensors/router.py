import json
from typing import Any

from fastapi import APIRouter, Depends, Request

from carewatch.core.middleware import client_identity
from carewatch.engine import Engine
from carewatch.modules.sensors.schemas import SensorWebhookResponse
from carewatch.shared import deps

router = APIRouter()


@router.post(
    "/webhook",
    response_model=SensorWebhookResponse,
    response_model_exclude_none=True,
)
async def sensor_webhook(
    request: Request, engine: Engine = Depends(deps.get_engine)
) -> SensorWebhookResponse:
    """Vendor motion-sensor webhook. Events from unmonitored device types are acknowledged and dropped."""
    body = await request.body()
    payload: Any
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        # Counted against the sender's quota like any other event before rejection.
        payload = None
    outcome = await engine.normalizer.ingest(payload, sender=client_identity(request))
    return SensorWebhookResponse(
        status=outcome.status,
        patient_id=outcome.patient_id,
        activity_id=outcome.activity_id,
        alert_id=outcome.alert_id,
        notification=outcome.notification,
    )
