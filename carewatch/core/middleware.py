import time
import uuid
from typing import Awaitable, Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from carewatch.core.config import settings


def client_identity(request: Request) -> str:
    """Best-effort sender identity: first hop of X-Forwarded-For, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


class StructlogMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        correlation_id = request.headers.get("X-Correlation-ID") or request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
            client_ip=client_identity(request),
        )

        logger = structlog.get_logger()
        if settings.ENVIRONMENT in ["local", "dev"]:
            logger.info("request_started")

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed",
                duration=time.perf_counter() - start_time,
            )
            raise

        # Scheduler ticks fire every few seconds; keep successful ones at debug.
        log_method = logger.debug if request.url.path.endswith("/monitoring/tick") else logger.info
        log_method(
            "request_finished",
            status_code=response.status_code,
            duration=time.perf_counter() - start_time,
        )
        response.headers["X-Request-ID"] = request_id
        return response
