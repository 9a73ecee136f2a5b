from fastapi import APIRouter, Depends, status

from carewatch.core.errors import NotFoundError
from carewatch.engine import Engine
from carewatch.modules.activity.schemas import (
    AcknowledgmentRequest,
    AcknowledgmentResponse,
    ActivityOut,
    CheckInRequest,
)
from carewatch.shared import deps
from carewatch.shared.constants import ActivitySource

router = APIRouter(dependencies=[Depends(deps.require_service_token)])


@router.post("/check-in", response_model=ActivityOut, status_code=status.HTTP_201_CREATED)
async def record_check_in(
    body: CheckInRequest, engine: Engine = Depends(deps.get_engine)
) -> ActivityOut:
    if await engine.store.get_patient(body.patient_id) is None:
        raise NotFoundError("Patient not found", patient_id=body.patient_id)
    record = await engine.sink.record(
        body.patient_id,
        ActivitySource.CONVERSATIONAL,
        timestamp=body.timestamp,
        detail=body.detail,
    )
    return ActivityOut.model_validate(record.model_dump())


@router.post("/acknowledgment", response_model=AcknowledgmentResponse)
async def record_acknowledgment(
    body: AcknowledgmentRequest, engine: Engine = Depends(deps.get_engine)
) -> AcknowledgmentResponse:
    results = await engine.alerts.acknowledge_patient(body.patient_id, body.actor, body.note)
    return AcknowledgmentResponse(
        resolved_alert_ids=[result.alert.id for result in results if result.applied]
    )
