import json
from pathlib import Path

import structlog
from pydantic import Field, ValidationError as PydanticValidationError, model_validator

from carewatch.core.config import settings
from carewatch.core.errors import ConfigError
from carewatch.shared.constants import AlertKind, RecipientKind
from carewatch.shared.schemas import CamelModel

log = structlog.get_logger()


class MonitoringConfig(CamelModel):
    """Thresholds and escalation policy applied by the tick processor."""

    soft_threshold_seconds: int = Field(gt=0)
    escalation_window_seconds: int = Field(gt=0)
    bypass_soft_stage: list[AlertKind] = Field(
        default_factory=lambda: [AlertKind.FALL_DETECTED]
    )
    immediate_escalation_recipient: RecipientKind = RecipientKind.CAREGIVER
    # Unset means an escalated alert is notified once and then waits for acknowledgment.
    escalation_reminder_seconds: int | None = Field(default=None, gt=0)
    max_escalation_reminders: int = Field(default=3, ge=0)
    max_notification_attempts: int = Field(default=3, ge=1)
    pending_attempt_timeout_seconds: int = Field(default=120, gt=0)

    def bypasses_soft_stage(self, kind: AlertKind) -> bool:
        return kind in self.bypass_soft_stage

    def reminder_round(self, seconds_escalated: float) -> int:
        """Reminder round due after ``seconds_escalated`` in ESCALATED (0 = none yet)."""
        if not self.escalation_reminder_seconds:
            return 0
        due = int(seconds_escalated // self.escalation_reminder_seconds)
        return min(due, self.max_escalation_reminders)


class MonitoringOverride(CamelModel):
    """Per-patient overrides; unset fields inherit the deployment config."""

    soft_threshold_seconds: int | None = Field(default=None, gt=0)
    escalation_window_seconds: int | None = Field(default=None, gt=0)
    escalation_reminder_seconds: int | None = Field(default=None, gt=0)
    max_notification_attempts: int | None = Field(default=None, ge=1)


class MonitoringRules(CamelModel):
    version: str = "default-v1"
    defaults: MonitoringConfig

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: object) -> object:
        if isinstance(data, dict) and "defaults" not in data:
            data = {**data, "defaults": default_config().model_dump()}
        return data

    def for_patient(self, override: MonitoringOverride | None) -> MonitoringConfig:
        if override is None:
            return self.defaults
        changes = override.model_dump(exclude_none=True)
        if not changes:
            return self.defaults
        try:
            return MonitoringConfig.model_validate({**self.defaults.model_dump(), **changes})
        except PydanticValidationError as exc:
            raise ConfigError("invalid per-patient monitoring override", error=str(exc)) from exc


def default_config() -> MonitoringConfig:
    try:
        return MonitoringConfig(
            soft_threshold_seconds=settings.SOFT_THRESHOLD_SECONDS,
            escalation_window_seconds=settings.ESCALATION_WINDOW_SECONDS,
            max_notification_attempts=settings.MAX_NOTIFICATION_ATTEMPTS,
        )
    except PydanticValidationError as exc:
        raise ConfigError("monitoring thresholds are not configured", error=str(exc)) from exc


def load_rules(path: Path | None) -> MonitoringRules:
    """
    Load monitoring rules from JSON.

    A missing file means "use the deployment defaults". A file that exists but cannot
    be parsed is a ConfigError: evaluating with thresholds nobody intended is unsafe.
    """
    if path is None:
        return MonitoringRules(defaults=default_config())
    try:
        payload = json.loads(path.read_text())
    except FileNotFoundError:
        log.info("monitoring rules file not found, using defaults", path=str(path))
        return MonitoringRules(defaults=default_config())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError("monitoring rules file unreadable", path=str(path), error=str(exc)) from exc

    try:
        rules = MonitoringRules.model_validate(payload)
    except PydanticValidationError as exc:
        raise ConfigError("monitoring rules file invalid", path=str(path), error=str(exc)) from exc
    log.info("monitoring rules loaded", path=str(path), version=rules.version)
    return rules


def rules_path() -> Path | None:
    return Path(settings.MONITORING_RULES_PATH) if settings.MONITORING_RULES_PATH else None


class RulesLoader:
    """Callable returning the current rules, re-reading the file when it changes."""

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._stamp: float | None = None
        self._rules: MonitoringRules | None = None

    def _file_stamp(self) -> float | None:
        if self._path is None:
            return None
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return None

    def __call__(self) -> MonitoringRules:
        stamp = self._file_stamp()
        if self._rules is None or stamp != self._stamp:
            self._rules = load_rules(self._path)
            self._stamp = stamp
        return self._rules
