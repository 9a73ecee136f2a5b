from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    PROJECT_NAME: str = "Carewatch"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = ""  # local, dev, prod (from .env)

    # Persistence: "mongo" or "memory" (single process, non durable)
    STORE_BACKEND: str = "mongo"
    MONGODB_URL: str = ""
    MONGODB_DB_NAME: str = ""
    STORE_TIMEOUT_SECONDS: float = 5.0

    # CORS (from .env, comma-separated)
    BACKEND_CORS_ORIGINS: List[str] = []

    # Logging & Sentry
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None

    # Shared counters for rate limiting (set empty to keep them process-local)
    REDIS_URL: str | None = None

    # Security (from .env)
    CRON_SECRET: str = ""
    SERVICE_API_KEY: str = ""

    # Monitoring defaults, overridden by the rules file and per-patient overrides
    MONITORING_RULES_PATH: str = ""
    SOFT_THRESHOLD_SECONDS: int = 30
    ESCALATION_WINDOW_SECONDS: int = 600
    MAX_NOTIFICATION_ATTEMPTS: int = 3
    # How far ahead of our clock a reported timestamp may be
    MAX_CLOCK_SKEW_SECONDS: int = 300

    # Ingestion quotas
    SENSOR_RATE_LIMIT: int = 100
    SENSOR_RATE_WINDOW_SECONDS: int = 60
    SENSOR_DEVICE_TYPES: List[str] = ["WoPresence"]
    FALL_REPORT_RATE_LIMIT: int = 10
    FALL_REPORT_RATE_WINDOW_SECONDS: int = 60

    # Messaging channels (at least one outside local; locally, messages are only logged)
    SEND_TIMEOUT_SECONDS: float = 20.0
    NOTIFY_WEBHOOK_URL: str | None = None
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_CHAT_ID: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()
