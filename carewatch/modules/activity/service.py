from datetime import datetime, timedelta
from typing import Callable

import structlog

from carewatch.core.errors import ValidationError
from carewatch.modules.activity.models import ActivityRecord
from carewatch.shared.constants import ActivitySource
from carewatch.shared.schemas import ensure_utc, utc_now
from carewatch.store.base import EngineStore

log = structlog.get_logger()


class ActivitySink:
    """Append-only record of "the patient is not in distress" signals.

    Reported timestamps may run slightly ahead of our clock; anything further in the
    future is rejected, since it would hold the silence baseline open until then.
    """

    def __init__(
        self,
        store: EngineStore,
        clock: Callable[[], datetime] = utc_now,
        max_skew_seconds: float = 300,
    ) -> None:
        self._store = store
        self._clock = clock
        self._max_skew = timedelta(seconds=max_skew_seconds)

    async def record(
        self,
        patient_id: str,
        source: ActivitySource,
        timestamp: datetime | None = None,
        detail: str | None = None,
        actor: str | None = None,
        device_mac: str | None = None,
        alert_id: str | None = None,
    ) -> ActivityRecord:
        now = self._clock()
        if timestamp is not None:
            timestamp = ensure_utc(timestamp)
            if timestamp > now + self._max_skew:
                log.warning(
                    "activity.rejected",
                    reason="future_timestamp",
                    patient_id=patient_id,
                    source=source.value,
                    timestamp=timestamp.isoformat(),
                )
                raise ValidationError(
                    "Timestamp is in the future",
                    errors=[f"timestamp: later than {(now + self._max_skew).isoformat()}"],
                    patient_id=patient_id,
                )

        record = ActivityRecord(
            patient_id=patient_id,
            source=source,
            timestamp=timestamp or now,
            detail=detail,
            actor=actor,
            device_mac=device_mac,
            alert_id=alert_id,
        )
        await self._store.append_activity(record)
        log.info(
            "activity.recorded",
            patient_id=patient_id,
            source=source.value,
            activity_id=record.id,
            timestamp=record.timestamp.isoformat(),
        )
        return record

    async def latest(
        self, patient_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None:
        return await self._store.latest_activity(patient_id, source)
