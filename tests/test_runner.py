"""
Tests for the runner wiring and CLI

Builds the full component graph from config with no network calls: the
automation flag is off or no account is due, so nothing reaches the venue.
"""

import json

import pytest
import yaml

from core.exceptions import ConfigurationError
from runner.main_loop import AutomationRunner, build_parser, main
from tests.helpers import make_account
from tools.config_validator import AppSchema


def app_config(tmp_path, **sections):
    data = {
        "logging": {
            "file": None,
            "automation_log": str(tmp_path / "logs" / "automation.jsonl"),
            "streaming_log": str(tmp_path / "logs" / "streaming.jsonl"),
        },
        "store": {"path": str(tmp_path / "data" / "accounts.json")},
    }
    data.update(sections)
    return data


def write_config(tmp_path, **sections):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "app.yaml").write_text(yaml.safe_dump(app_config(tmp_path, **sections)))
    return str(config_dir)


@pytest.fixture
def token(monkeypatch):
    monkeypatch.setenv("METAAPI_TOKEN", "telemetry-token")


@pytest.fixture
def runner(tmp_path, token):
    return AutomationRunner(config=AppSchema(**app_config(tmp_path)))


class TestAutomationRunner:

    def test_missing_token_is_a_config_error(self, tmp_path, monkeypatch):
        monkeypatch.delenv("METAAPI_TOKEN", raising=False)
        with pytest.raises(ConfigurationError) as exc_info:
            AutomationRunner(config=AppSchema(**app_config(tmp_path)))
        assert "METAAPI_TOKEN" in str(exc_info.value)

    def test_copier_needs_its_own_token(self, tmp_path, token, monkeypatch):
        monkeypatch.delenv("COPYFACTORY_TOKEN", raising=False)
        config = AppSchema(**app_config(tmp_path, copier={"enabled": True, "token_env": "COPYFACTORY_TOKEN"}))
        with pytest.raises(ConfigurationError):
            AutomationRunner(config=config)

    def test_optional_components_off_by_default(self, runner):
        assert runner.gateway is None
        assert runner.notifier is None
        assert not runner.orchestrator.enabled

    def test_disabled_rule_reports_without_touching_accounts(self, runner):
        runner.store.put(make_account(auto_pause_enabled=True))
        result = runner.run_rule("risk-check")
        assert result["disabled"] is True
        assert result["checked"] == 0

    def test_env_flag_enables_automation(self, runner, monkeypatch):
        monkeypatch.setenv("ENABLE_AUTOMATION_FEATURES", "true")
        result = runner.run_rule("rebalance")
        assert "disabled" not in result
        assert result["checked"] == 0

    def test_health_status_without_streaming(self, runner):
        status = runner.health_status()
        assert status["ok"] is True
        assert status["streaming"] is None
        assert status["automation_enabled"] is False
        assert status["last_runs"] == {}

    def test_health_status_reports_last_run(self, runner, monkeypatch):
        monkeypatch.setenv("ENABLE_AUTOMATION_FEATURES", "true")
        runner.run_rule("disconnect-check")
        assert runner.health_status()["last_runs"]["disconnect-check"]["checked"] == 0

    def test_health_status_with_streaming_configured(self, tmp_path, token):
        config = AppSchema(**app_config(tmp_path, streaming={"account_id": "master-1"}))
        status = AutomationRunner(config=config).health_status()
        assert status["ok"] is True
        assert status["streaming"]["phase"] == "disconnected"

    def test_check_accounts(self, runner):
        runner.store.put(make_account("good"))
        runner.store.put(make_account("bad", auto_resume_enabled=True,
                                      max_drawdown_percent=10.0, resume_drawdown_percent=12.0))
        report = runner.check_accounts()
        assert report["accounts_with_problems"] == 1
        assert list(report["problems"]) == ["bad"]


class TestCli:

    def test_parser_commands(self):
        parser = build_parser()
        assert parser.parse_args(["daily-summary", "--date", "2026-03-01"]).date.isoformat() == "2026-03-01"
        assert parser.parse_args(["risk-status", "acc-1"]).account_id == "acc-1"
        assert parser.parse_args(["streaming", "reset"]).action == "reset"
        with pytest.raises(SystemExit):
            parser.parse_args(["streaming", "pause"])

    def test_invalid_config_exits_2(self, tmp_path, token):
        config_dir = write_config(tmp_path, automation={"batch_size": 0})
        assert main(["--config-dir", config_dir, "rebalance"]) == 2

    def test_missing_token_exits_2(self, tmp_path, monkeypatch):
        monkeypatch.delenv("METAAPI_TOKEN", raising=False)
        config_dir = write_config(tmp_path)
        assert main(["--config-dir", config_dir, "rebalance"]) == 2

    def test_rule_prints_json_result(self, tmp_path, token, capsys):
        config_dir = write_config(tmp_path)
        assert main(["--config-dir", config_dir, "daily-summary", "--date", "2026-03-01"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["rule"] == "daily-summary"
        assert output["disabled"] is True

    def test_unknown_account_exits_1(self, tmp_path, token):
        config_dir = write_config(tmp_path)
        assert main(["--config-dir", config_dir, "risk-status", "missing"]) == 1
