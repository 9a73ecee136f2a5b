from __future__ import annotations

import asyncio
import functools
import re
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Concatenate, Iterable, ParamSpec, TypeVar

import structlog
from beanie.operators import In
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from carewatch.core.errors import UpstreamError
from carewatch.modules.activity.models import ActivityRecord, ActivityRecordDocument
from carewatch.modules.alerts.models import Alert, AlertDocument, AlertNote
from carewatch.modules.notifications.models import NotificationAttempt, NotificationAttemptDocument
from carewatch.modules.patients.models import (
    Patient,
    PatientDocument,
    SensorDevice,
    SensorDeviceDocument,
)
from carewatch.shared.constants import (
    ActivitySource,
    AlertKind,
    AlertState,
    AttemptOutcome,
    RecipientKind,
)
from carewatch.store.base import EngineStore

log = structlog.get_logger()

P = ParamSpec("P")
R = TypeVar("R")
M = TypeVar("M", bound=BaseModel)


def _bounded(
    func: Callable[Concatenate["MongoStore", P], Awaitable[R]],
) -> Callable[Concatenate["MongoStore", P], Awaitable[R]]:
    """Apply the store timeout and surface driver failures as UpstreamError."""

    @functools.wraps(func)
    async def wrapper(store: "MongoStore", *args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await asyncio.wait_for(func(store, *args, **kwargs), store.timeout)
        except asyncio.TimeoutError as exc:
            log.warning("store.timeout", operation=func.__name__, timeout=store.timeout)
            raise UpstreamError("store call timed out", operation=func.__name__) from exc
        except PyMongoError as exc:
            log.warning("store.failed", operation=func.__name__, error=str(exc))
            raise UpstreamError("store call failed", operation=func.__name__) from exc

    return wrapper


def _email_filter(email: str) -> dict[str, Any]:
    # EmailStr keeps the local part's case, so addresses are matched case-insensitively.
    return {"contact.email": {"$regex": f"^{re.escape(email.strip())}$", "$options": "i"}}


def _to_bson(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return _to_bson(value.model_dump())
    if isinstance(value, dict):
        return {key: _to_bson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_bson(item) for item in value]
    return value


def _from_raw(model: type[M], raw: dict[str, Any]) -> M:
    data = dict(raw)
    if "_id" in data:
        data["id"] = data.pop("_id")
    return model.model_validate(data)


def _from_doc(model: type[M], doc: BaseModel | None) -> M | None:
    if doc is None:
        return None
    return model.model_validate(doc.model_dump())


class MongoStore(EngineStore):
    """EngineStore backed by MongoDB through Beanie; requires ``init_db()`` first."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout

    # ---- patients ----

    @_bounded
    async def list_monitored_patients(self) -> list[Patient]:
        docs = await PatientDocument.find(PatientDocument.monitoring_enabled == True).to_list()  # noqa: E712
        return [Patient.model_validate(doc.model_dump()) for doc in docs]

    @_bounded
    async def get_patient(self, patient_id: str) -> Patient | None:
        return _from_doc(Patient, await PatientDocument.get(patient_id))

    @_bounded
    async def find_patient_by_contact(
        self, email: str | None = None, phone: str | None = None
    ) -> Patient | None:
        doc = None
        if email:
            doc = await PatientDocument.find_one(_email_filter(email))
        if doc is None and phone:
            doc = await PatientDocument.find_one({"contact.phone": phone})
        return _from_doc(Patient, doc)

    @_bounded
    async def find_device(self, device_mac: str) -> SensorDevice | None:
        doc = await SensorDeviceDocument.find_one(SensorDeviceDocument.device_mac == device_mac)
        return _from_doc(SensorDevice, doc)

    # ---- activity ----

    @_bounded
    async def append_activity(self, record: ActivityRecord) -> ActivityRecord:
        await ActivityRecordDocument(**record.model_dump()).insert()
        return record

    async def latest_activity(
        self, patient_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None:
        latest = await self.latest_activity_per_patient([patient_id], source)
        return latest.get(patient_id)

    @_bounded
    async def latest_activity_per_patient(
        self, patient_ids: Iterable[str], source: ActivitySource | None = None
    ) -> dict[str, ActivityRecord]:
        match: dict[str, Any] = {"patient_id": {"$in": list(patient_ids)}}
        if source is not None:
            match["source"] = source.value
        pipeline = [
            {"$match": match},
            {"$sort": {"timestamp": -1}},
            {"$group": {"_id": "$patient_id", "latest": {"$first": "$$ROOT"}}},
        ]
        collection = ActivityRecordDocument.get_motor_collection()
        rows = await collection.aggregate(pipeline).to_list(length=None)
        return {row["_id"]: _from_raw(ActivityRecord, row["latest"]) for row in rows}

    @_bounded
    async def latest_activity_for_alert(
        self, patient_id: str, alert_id: str, source: ActivitySource | None = None
    ) -> ActivityRecord | None:
        query: dict[str, Any] = {"patient_id": patient_id, "alert_id": {"$in": [None, alert_id]}}
        if source is not None:
            query["source"] = source.value
        collection = ActivityRecordDocument.get_motor_collection()
        raw = await collection.find_one(query, sort=[("timestamp", -1)])
        return _from_raw(ActivityRecord, raw) if raw else None

    # ---- alerts ----

    @_bounded
    async def create_alert_if_none_active(self, alert: Alert) -> tuple[Alert, bool]:
        # The partial unique index on (patient_id, kind, active=true) arbitrates races.
        for _ in range(3):
            try:
                await AlertDocument(**alert.model_dump()).insert()
                return alert, True
            except DuplicateKeyError:
                existing = await self._find_active(alert.patient_id, alert.kind)
                if existing is not None:
                    return existing, False
                # The blocking alert became terminal between insert and read; retry.
        raise UpstreamError("alert creation kept racing", patient_id=alert.patient_id)

    @_bounded
    async def transition_alert(
        self, alert_id: str, expected: AlertState, changes: dict[str, Any]
    ) -> Alert | None:
        collection = AlertDocument.get_motor_collection()
        raw = await collection.find_one_and_update(
            {"_id": alert_id, "state": expected.value},
            {"$set": _to_bson(changes)},
            return_document=ReturnDocument.AFTER,
        )
        return _from_raw(Alert, raw) if raw else None

    @_bounded
    async def append_alert_note(self, alert_id: str, note: AlertNote) -> Alert | None:
        collection = AlertDocument.get_motor_collection()
        raw = await collection.find_one_and_update(
            {"_id": alert_id},
            {"$push": {"notes": _to_bson(note)}},
            return_document=ReturnDocument.AFTER,
        )
        return _from_raw(Alert, raw) if raw else None

    @_bounded
    async def get_alert(self, alert_id: str) -> Alert | None:
        return _from_doc(Alert, await AlertDocument.get(alert_id))

    @_bounded
    async def get_active_alert(self, patient_id: str, kind: AlertKind) -> Alert | None:
        return await self._find_active(patient_id, kind)

    @_bounded
    async def list_active_alerts(self, patient_ids: Iterable[str] | None = None) -> list[Alert]:
        query = AlertDocument.find(AlertDocument.active == True)  # noqa: E712
        if patient_ids is not None:
            query = query.find(In(AlertDocument.patient_id, list(patient_ids)))
        return [Alert.model_validate(doc.model_dump()) for doc in await query.to_list()]

    async def _find_active(self, patient_id: str, kind: AlertKind) -> Alert | None:
        doc = await AlertDocument.find_one(
            AlertDocument.patient_id == patient_id,
            AlertDocument.kind == kind,
            AlertDocument.active == True,  # noqa: E712
        )
        return _from_doc(Alert, doc)

    # ---- notification attempts ----

    @_bounded
    async def list_attempts(
        self,
        alert_id: str,
        recipient_kind: RecipientKind | None = None,
        round: int | None = None,
    ) -> list[NotificationAttempt]:
        query = NotificationAttemptDocument.find(NotificationAttemptDocument.alert_id == alert_id)
        if recipient_kind is not None:
            query = query.find(NotificationAttemptDocument.recipient_kind == recipient_kind)
        if round is not None:
            query = query.find(NotificationAttemptDocument.round == round)
        docs = await query.sort("+round", "+attempt_number").to_list()
        return [NotificationAttempt.model_validate(doc.model_dump()) for doc in docs]

    @_bounded
    async def claim_attempt(self, attempt: NotificationAttempt) -> bool:
        try:
            await NotificationAttemptDocument(**attempt.model_dump()).insert()
        except DuplicateKeyError:
            return False
        return True

    @_bounded
    async def complete_attempt(
        self,
        attempt_id: str,
        outcome: AttemptOutcome,
        completed_at: datetime,
        **fields: Any,
    ) -> NotificationAttempt | None:
        collection = NotificationAttemptDocument.get_motor_collection()
        raw = await collection.find_one_and_update(
            {"_id": attempt_id, "outcome": AttemptOutcome.PENDING.value},
            {"$set": _to_bson({"outcome": outcome, "completed_at": completed_at, **fields})},
            return_document=ReturnDocument.AFTER,
        )
        return _from_raw(NotificationAttempt, raw) if raw else None
