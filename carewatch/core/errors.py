"""
Error taxonomy shared by every ingress point of the engine.

Each error carries a stable machine-readable ``kind`` and the HTTP status it maps to,
so routers can simply raise and let ``register_exception_handlers`` render the body.
"""

from __future__ import annotations

import math
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = structlog.get_logger()


class EngineError(Exception):
    kind = "engine_error"
    status_code = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_body(self) -> dict[str, Any]:
        return {"error": self.kind, "detail": self.message}


class ValidationError(EngineError):
    """Malformed or unexpected payload shape. No state was changed."""

    kind = "validation_error"
    status_code = 400

    def __init__(self, message: str, errors: list[str] | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.errors = errors or []

    def to_body(self) -> dict[str, Any]:
        body = super().to_body()
        if self.errors:
            body["details"] = self.errors
        return body


class InvalidTransitionError(ValidationError):
    kind = "invalid_transition"
    status_code = 409


class AuthError(EngineError):
    kind = "auth_error"
    status_code = 401


class RateLimitError(EngineError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, reset_in: float, **context: Any) -> None:
        super().__init__(message, **context)
        self.retry_after = max(1, math.ceil(reset_in))

    def to_body(self) -> dict[str, Any]:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        return body


class NotFoundError(EngineError):
    kind = "not_found"
    status_code = 404


class UpstreamError(EngineError):
    """A store or send-capability call failed or timed out."""

    kind = "upstream_error"
    status_code = 502


class ConfigError(EngineError):
    kind = "config_error"
    status_code = 500


async def _engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    level = "error" if exc.status_code >= 500 else "warning"
    getattr(log, level)(
        "request_rejected",
        error_kind=exc.kind,
        detail=exc.message,
        path=request.url.path,
        **exc.context,
    )
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return await _engine_error_handler(
        request, ValidationError("Invalid request payload", errors=errors)
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EngineError, _engine_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
