import json
import os

import pytest

from carewatch.core.errors import ConfigError
from carewatch.modules.monitoring.config import (
    MonitoringConfig,
    MonitoringOverride,
    MonitoringRules,
    RulesLoader,
    load_rules,
)
from carewatch.shared.constants import AlertKind, RecipientKind


def test_missing_rules_file_uses_defaults(tmp_path) -> None:
    rules = load_rules(tmp_path / "absent.json")

    assert rules.version == "default-v1"
    assert rules.defaults.bypasses_soft_stage(AlertKind.FALL_DETECTED)
    assert rules.defaults.immediate_escalation_recipient == RecipientKind.CAREGIVER


def test_rules_file_uses_camel_case_keys(tmp_path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            {
                "version": "night-shift",
                "defaults": {
                    "softThresholdSeconds": 900,
                    "escalationWindowSeconds": 1200,
                    "escalationReminderSeconds": 600,
                },
            }
        )
    )

    rules = load_rules(path)

    assert rules.version == "night-shift"
    assert rules.defaults.soft_threshold_seconds == 900
    assert rules.defaults.escalation_reminder_seconds == 600


@pytest.mark.parametrize(
    "content",
    ["{not json", json.dumps({"defaults": {"softThresholdSeconds": -5, "escalationWindowSeconds": 60}})],
)
def test_broken_rules_file_is_a_config_error(tmp_path, content) -> None:
    path = tmp_path / "rules.json"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_rules(path)


def test_patient_override_merges_over_defaults() -> None:
    rules = MonitoringRules(
        defaults=MonitoringConfig(soft_threshold_seconds=30, escalation_window_seconds=60)
    )

    merged = rules.for_patient(MonitoringOverride(escalation_window_seconds=300))

    assert merged.soft_threshold_seconds == 30
    assert merged.escalation_window_seconds == 300
    assert rules.for_patient(None) is rules.defaults


def test_reminder_round_is_capped() -> None:
    config = MonitoringConfig(
        soft_threshold_seconds=30,
        escalation_window_seconds=60,
        escalation_reminder_seconds=100,
        max_escalation_reminders=2,
    )

    assert config.reminder_round(99) == 0
    assert config.reminder_round(100) == 1
    assert config.reminder_round(10_000) == 2
    assert MonitoringConfig(soft_threshold_seconds=1, escalation_window_seconds=1).reminder_round(10_000) == 0


def test_rules_loader_reloads_when_file_changes(tmp_path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"version": "a"}))
    loader = RulesLoader(path)

    first = loader()
    assert first.version == "a"
    assert loader() is first

    path.write_text(json.dumps({"version": "b"}))
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    assert loader().version == "b"
