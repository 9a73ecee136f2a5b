from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carewatch.core.cache import close_cache, init_cache
from carewatch.core.config import settings
from carewatch.core.db import init_db
from carewatch.core.errors import register_exception_handlers
from carewatch.core.logging import setup_logging
from carewatch.core.middleware import StructlogMiddleware
from carewatch.engine import build_engine
from carewatch.modules.activity import router as activity_router
from carewatch.modules.alerts import router as alerts_router
from carewatch.modules.monitoring import router as monitoring_router
from carewatch.modules.sensors import router as sensors_router

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    mongo_client = None
    if settings.STORE_BACKEND.lower() == "mongo":
        mongo_client = await init_db()
    # Redis is optional; without it rate-limit counters stay process-local.
    cache_client = await init_cache()
    app.state.engine = build_engine(settings, cache_client=cache_client)

    yield

    # Shutdown
    await app.state.engine.close()
    if mongo_client is not None:
        mongo_client.close()
    await close_cache()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="""
    ## Carewatch inactivity engine

    * **Ingestion**: motion-sensor webhooks, conversational check-ins, fall reports
    * **Monitoring**: scheduler-driven ticks that open, escalate and resolve alerts
    * **Notifications**: idempotent check-in and escalation messages with bounded retry

    ### Authentication
    The tick endpoint expects the scheduler's `X-Cron-Secret`; service endpoints expect
    `X-Service-Token` (or a Bearer token) matching `SERVICE_API_KEY`.
    """,
    version="0.1.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(StructlogMiddleware)
register_exception_handlers(app)

app.include_router(
    monitoring_router.router, prefix=f"{settings.API_V1_STR}/monitoring", tags=["monitoring"]
)
app.include_router(
    sensors_router.router, prefix=f"{settings.API_V1_STR}/sensors", tags=["sensors"]
)
app.include_router(alerts_router.router, prefix=f"{settings.API_V1_STR}/alerts", tags=["alerts"])
app.include_router(
    activity_router.router, prefix=f"{settings.API_V1_STR}/activity", tags=["activity"]
)


@app.get("/health")
@app.get(f"{settings.API_V1_STR}/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}
