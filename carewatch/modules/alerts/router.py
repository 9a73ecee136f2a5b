"""Service-facing alert endpoints: fall reports and operator actions."""

from fastapi import APIRouter, Depends, status

from carewatch.core.config import settings
from carewatch.core.rate_limit import RateLimited
from carewatch.engine import Engine
from carewatch.modules.alerts.models import Alert
from carewatch.modules.alerts.schemas import (
    AlertActionRequest,
    AlertActionResponse,
    AlertDetailResponse,
    AlertOut,
    FallReportRequest,
    FallReportResponse,
    NotificationAttemptOut,
)
from carewatch.shared import deps

router = APIRouter(dependencies=[Depends(deps.require_service_token)])

fall_report_quota = RateLimited(
    "fall-report", settings.FALL_REPORT_RATE_LIMIT, settings.FALL_REPORT_RATE_WINDOW_SECONDS
)


def _alert_out(alert: Alert) -> AlertOut:
    return AlertOut.model_validate(alert.model_dump())


@router.post(
    "/fall-report",
    response_model=FallReportResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(fall_report_quota)],
)
async def report_fall(
    body: FallReportRequest, engine: Engine = Depends(deps.get_engine)
) -> FallReportResponse:
    result, dispatch = await engine.alerts.report_fall(
        body.location,
        email=body.patient_email,
        phone=body.patient_phone,
        message=body.message,
    )
    return FallReportResponse(
        alert_id=result.alert.id,
        new_alert=result.applied,
        notification=dispatch.status.value,
    )


@router.post("/{alert_id}/acknowledge", response_model=AlertActionResponse)
async def acknowledge_alert(
    alert_id: str, body: AlertActionRequest, engine: Engine = Depends(deps.get_engine)
) -> AlertActionResponse:
    result = await engine.alerts.acknowledge(alert_id, body.actor, body.note)
    return AlertActionResponse(applied=result.applied, alert=_alert_out(result.alert))


@router.post("/{alert_id}/false-alarm", response_model=AlertActionResponse)
async def mark_false_alarm(
    alert_id: str, body: AlertActionRequest, engine: Engine = Depends(deps.get_engine)
) -> AlertActionResponse:
    result = await engine.alerts.mark_false_alarm(alert_id, body.actor, body.note)
    return AlertActionResponse(applied=result.applied, alert=_alert_out(result.alert))


@router.get("/{alert_id}", response_model=AlertDetailResponse)
async def get_alert(alert_id: str, engine: Engine = Depends(deps.get_engine)) -> AlertDetailResponse:
    alert, attempts = await engine.alerts.detail(alert_id)
    return AlertDetailResponse(
        alert=_alert_out(alert),
        attempts=[NotificationAttemptOut.model_validate(a.model_dump()) for a in attempts],
    )
