import hmac

import structlog
from fastapi import Request

from carewatch.core.config import settings
from carewatch.core.errors import AuthError
from carewatch.engine import Engine

log = structlog.get_logger()


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def _bearer(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return None


def _matches(candidate: str | None, secret: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), secret.encode())


def verify_cron_secret(request: Request) -> None:
    """Scheduler auth: ``X-Cron-Secret`` or ``Authorization: Bearer``. Open when unset."""
    if not settings.CRON_SECRET:
        return
    candidate = request.headers.get("X-Cron-Secret") or _bearer(request)
    if not _matches(candidate, settings.CRON_SECRET):
        log.warning("auth.cron_rejected")
        raise AuthError("Invalid or missing cron secret")


def require_service_token(request: Request) -> None:
    """
    Trusted-caller auth for endpoints invoked by the profile and messaging services.

    Accepts ``X-Service-Token`` or ``Authorization: Bearer``. Without a configured
    ``SERVICE_API_KEY`` these endpoints are only open in the local environment.
    """
    if not settings.SERVICE_API_KEY:
        if settings.ENVIRONMENT == "local":
            return
        log.error("auth.service_key_missing")
        raise AuthError("Service authentication is not configured")
    candidate = request.headers.get("X-Service-Token") or _bearer(request)
    if not _matches(candidate, settings.SERVICE_API_KEY):
        log.warning("auth.service_rejected")
        raise AuthError("Invalid or missing service token")
