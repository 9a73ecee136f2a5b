"""
Component wiring.

``build_engine`` assembles one set of collaborators around a single store; the FastAPI
lifespan stores the result on ``app.state.engine`` and routers reach it through
``carewatch.shared.deps.get_engine``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from carewatch.core.config import Settings, settings
from carewatch.core.errors import ConfigError
from carewatch.core.rate_limit import (
    CounterStore,
    MemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
)
from carewatch.modules.activity.service import ActivitySink
from carewatch.modules.alerts.service import AlertService
from carewatch.modules.alerts.state_machine import AlertStateMachine
from carewatch.modules.monitoring.config import MonitoringRules, RulesLoader, rules_path
from carewatch.modules.monitoring.evaluator import ThresholdEvaluator
from carewatch.modules.notifications.channels import Sender, build_senders
from carewatch.modules.notifications.dispatcher import NotificationDispatcher
from carewatch.modules.sensors.normalizer import SensorEventNormalizer
from carewatch.shared.constants import Channel
from carewatch.shared.schemas import utc_now
from carewatch.store.base import EngineStore
from carewatch.store.memory import MemoryStore
from carewatch.store.mongo import MongoStore

log = structlog.get_logger()


@dataclass
class Engine:
    store: EngineStore
    sink: ActivitySink
    state_machine: AlertStateMachine
    dispatcher: NotificationDispatcher
    evaluator: ThresholdEvaluator
    normalizer: SensorEventNormalizer
    alerts: AlertService
    rate_limiter: RateLimiter
    rules: Callable[[], MonitoringRules]
    http_client: httpx.AsyncClient | None = None

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
        await self.store.close()


def build_store(config: Settings) -> EngineStore:
    backend = config.STORE_BACKEND.lower()
    if backend == "memory":
        log.warning("store.memory_backend", detail="state is lost on restart")
        return MemoryStore()
    if backend == "mongo":
        return MongoStore(timeout=config.STORE_TIMEOUT_SECONDS)
    raise ConfigError("unknown store backend", backend=config.STORE_BACKEND)


def build_engine(
    config: Settings = settings,
    store: EngineStore | None = None,
    senders: dict[Channel, Sender] | None = None,
    cache_client: Any = None,
    counter_store: CounterStore | None = None,
    rules: Callable[[], MonitoringRules] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Engine:
    store = store or build_store(config)
    rules = rules or RulesLoader(rules_path())
    # Fail at startup, not at the first tick, when thresholds are unusable.
    rules()

    http_client = None
    if senders is None:
        http_client = httpx.AsyncClient(timeout=config.SEND_TIMEOUT_SECONDS)
        senders = build_senders(config, http_client)

    if counter_store is None:
        counter_store = (
            RedisCounterStore(cache_client) if cache_client is not None else MemoryCounterStore()
        )
    rate_limiter = RateLimiter(counter_store)

    sink = ActivitySink(store, clock=clock, max_skew_seconds=config.MAX_CLOCK_SKEW_SECONDS)
    state_machine = AlertStateMachine(store, clock=clock)
    dispatcher = NotificationDispatcher(
        store,
        senders,
        rules,
        send_timeout_seconds=config.SEND_TIMEOUT_SECONDS,
        clock=clock,
    )
    evaluator = ThresholdEvaluator(store, state_machine, dispatcher, rules, clock=clock)
    normalizer = SensorEventNormalizer(
        store,
        sink,
        state_machine,
        dispatcher,
        rate_limiter,
        rules,
        device_types=config.SENSOR_DEVICE_TYPES,
        rate_limit=config.SENSOR_RATE_LIMIT,
        rate_window_seconds=config.SENSOR_RATE_WINDOW_SECONDS,
    )
    alerts = AlertService(store, sink, state_machine, dispatcher, rules)

    log.info(
        "engine.built",
        store=type(store).__name__,
        channels=[channel.value for channel in senders],
        shared_rate_limits=isinstance(counter_store, RedisCounterStore),
    )
    return Engine(
        store=store,
        sink=sink,
        state_machine=state_machine,
        dispatcher=dispatcher,
        evaluator=evaluator,
        normalizer=normalizer,
        alerts=alerts,
        rate_limiter=rate_limiter,
        rules=rules,
        http_client=http_client,
    )
