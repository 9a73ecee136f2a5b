from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, FrozenSet, Optional

import structlog

from carewatch.modules.notifications.models import NotificationAttempt
from carewatch.shared.constants import AttemptOutcome, RecipientKind
from carewatch.shared.schemas import ensure_utc
from carewatch.store.base import EngineStore

log = structlog.get_logger()


@dataclass(frozen=True)
class DispatchKey:
    alert_id: str
    recipient_kind: RecipientKind
    round: int = 0


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    ALREADY_SENT = "already_sent"
    IN_FLIGHT = "in_flight"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Claim:
    status: ClaimStatus
    attempt: Optional[NotificationAttempt] = None
    failures: int = 0
    # Recipients already reached by earlier partially failed attempts.
    delivered: FrozenSet[str] = frozenset()


@dataclass
class _KeyLock:
    lock: asyncio.Lock
    users: int = 0


class IdempotencyGuard:
    """
    At most one successful send per (alert, recipient kind, round).

    Within a process a per-key lock serialises dispatches so the second caller sees the
    first one's outcome. Across processes the store's unique attempt number decides who
    gets to send; the loser reports the dispatch as in flight.
    """

    def __init__(self, store: EngineStore) -> None:
        self._store = store
        self._locks: dict[DispatchKey, _KeyLock] = {}

    @asynccontextmanager
    async def hold(self, key: DispatchKey) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock(lock=asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    async def claim(
        self,
        key: DispatchKey,
        now: datetime,
        max_attempts: int,
        pending_timeout_seconds: int,
    ) -> Claim:
        attempts = await self._store.list_attempts(key.alert_id, key.recipient_kind, key.round)

        for attempt in attempts:
            if attempt.outcome == AttemptOutcome.SENT:
                return Claim(ClaimStatus.ALREADY_SENT, attempt)

        stale_before = now - timedelta(seconds=pending_timeout_seconds)
        for attempt in attempts:
            if attempt.outcome != AttemptOutcome.PENDING:
                continue
            if ensure_utc(attempt.created_at) > stale_before:
                return Claim(ClaimStatus.IN_FLIGHT, attempt)
            await self._store.complete_attempt(
                attempt.id, AttemptOutcome.FAILED, now, error="stale"
            )
            log.warning(
                "notification.stale_attempt",
                alert_id=key.alert_id,
                recipient_kind=key.recipient_kind.value,
                round=key.round,
                attempt_number=attempt.attempt_number,
            )

        failures = len(attempts)
        if failures >= max_attempts:
            return Claim(ClaimStatus.EXHAUSTED, attempts[-1] if attempts else None, failures)

        attempt = NotificationAttempt(
            alert_id=key.alert_id,
            recipient_kind=key.recipient_kind,
            round=key.round,
            attempt_number=failures + 1,
            created_at=now,
        )
        if not await self._store.claim_attempt(attempt):
            return Claim(ClaimStatus.IN_FLIGHT, None, failures)
        delivered = frozenset(name for row in attempts for name in row.delivered_to)
        return Claim(ClaimStatus.CLAIMED, attempt, failures, delivered)
