import logging
import logging.config
import sys
from typing import Any, Dict, List

import sentry_sdk
import structlog

from carewatch.core.config import settings


def _engine_loggers(level: str) -> Dict[str, Any]:
    """Route uvicorn and driver loggers through the structlog formatter."""
    loggers: Dict[str, Any] = {
        "": {  # Root logger
            "handlers": ["default"],
            "level": level,
            "propagate": True,
        },
    }
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        loggers[name] = {"handlers": ["default"], "level": "INFO", "propagate": False}
    # Motor/pymongo and httpx are chatty at DEBUG; keep them at WARNING.
    for name in ("pymongo", "httpx", "httpcore"):
        loggers[name] = {"handlers": ["default"], "level": "WARNING", "propagate": False}
    return loggers


def setup_logging() -> None:
    """
    Configure structured logging for the engine.
    - Local/dev: pretty console logging.
    - Anything else: JSON logging, one event per line.
    - Sentry included if DSN is set.
    """
    shared_processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=1.0 if settings.ENVIRONMENT == "local" else 0.1,
        )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer_processor = (
        structlog.dev.ConsoleRenderer()
        if settings.ENVIRONMENT in ["local", "dev"]
        else structlog.processors.JSONRenderer()
    )

    logging_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    renderer_processor,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "level": settings.LOG_LEVEL,
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
                "formatter": "default",
            },
        },
        "loggers": _engine_loggers(settings.LOG_LEVEL),
    }

    logging.config.dictConfig(logging_config)
