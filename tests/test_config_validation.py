"""
Tests for config validation

Ensures invalid configs are caught at startup before the runner is wired.
"""

from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigurationError
from core.models import RebalancingRules
from tools.config_validator import (
    AppSchema,
    load_app_config,
    validate_all_configs,
    validate_follower_account,
)
from tests.helpers import make_account

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


def write_config(tmp_path, data):
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(data))
    return str(tmp_path)


class TestAppConfig:

    def test_shipped_config_is_valid(self):
        assert validate_all_configs(str(REPO_CONFIG_DIR)) == []

    def test_empty_file_uses_defaults(self, tmp_path):
        (tmp_path / "app.yaml").write_text("")
        config = load_app_config(str(tmp_path))
        assert config.automation.batch_size == 5
        assert config.automation.run_budget_seconds == 240
        assert config.streaming.max_reconnect_attempts == 5
        assert config.streaming.circuit_cooldown_seconds == 900
        assert config.telemetry.max_attempts == 1

    def test_field_errors_name_the_path(self, tmp_path):
        errors = validate_all_configs(write_config(tmp_path, {"automation": {"batch_size": 0}}))
        assert len(errors) == 1
        assert errors[0].startswith("app.yaml: automation -> batch_size:")

    def test_log_level_is_case_insensitive(self, tmp_path):
        config = load_app_config(write_config(tmp_path, {"logging": {"level": "debug"}}))
        assert config.logging.level == "DEBUG"

    def test_backoff_bounds_checked(self, tmp_path):
        errors = validate_all_configs(write_config(
            tmp_path, {"streaming": {"base_delay_seconds": 600, "max_delay_seconds": 300}}
        ))
        assert any("base_delay_seconds" in e for e in errors)

    def test_sanity_checks(self, tmp_path):
        errors = validate_all_configs(write_config(tmp_path, {
            "streaming": {"health_window_seconds": 5, "poll_interval_seconds": 10},
            "telemetry": {"timeout_seconds": 100, "max_attempts": 3},
        }))
        assert any(e.startswith("streaming: health_window_seconds") for e in errors)
        assert any(e.startswith("telemetry: timeout_seconds") for e in errors)

    def test_malformed_yaml(self, tmp_path):
        (tmp_path / "app.yaml").write_text("automation:\n  enabled: [true\n")
        errors = validate_all_configs(str(tmp_path))
        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]

    def test_missing_file(self, tmp_path):
        errors = validate_all_configs(str(tmp_path))
        assert errors and "not found" in errors[0]

    def test_load_raises_with_every_error(self, tmp_path):
        path = write_config(tmp_path, {"health": {"port": 0}, "metrics": {"port": 70000}})
        with pytest.raises(ConfigurationError) as exc_info:
            load_app_config(path)
        assert "health -> port" in str(exc_info.value)
        assert "metrics -> port" in str(exc_info.value)

    def test_schema_defaults_without_file(self):
        assert AppSchema().health.port == 8080


class TestFollowerAccountValidation:

    def test_consistent_account(self):
        account = make_account(auto_resume_enabled=True, rebalancing_rules=RebalancingRules())
        assert validate_follower_account(account) == []

    def test_inverted_pause_resume_band(self):
        account = make_account(auto_resume_enabled=True, max_drawdown_percent=10.0, resume_drawdown_percent=10.0)
        problems = validate_follower_account(account)
        assert problems == ["resume_drawdown_percent (10.0) must be below max_drawdown_percent (10.0)"]

    def test_band_ignored_without_auto_resume(self):
        account = make_account(max_drawdown_percent=10.0, resume_drawdown_percent=15.0)
        assert validate_follower_account(account) == []

    def test_rule_problems(self):
        account = make_account(
            risk_multiplier=4.0,
            max_drawdown_percent=150.0,
            rebalancing_rules=RebalancingRules(min_multiplier=2.0, max_multiplier=1.0, adjustment_step=0.0),
        )
        problems = validate_follower_account(account)
        assert any("min_multiplier" in p for p in problems)
        assert any("adjustment_step" in p for p in problems)
        assert any("outside" in p for p in problems)
        assert any("max_drawdown_percent" in p for p in problems)
