"""
Configuration Validation Module

Validates config/app.yaml against Pydantic schemas and checks follower
account thresholds for logical consistency. Invalid configuration aborts
start-up instead of being guessed at.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from core.models import FollowerAccount

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = Field(default="copytrade-automation", min_length=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/automation.log", description="Log file (None = stderr only)")
    automation_log: str = Field(default="logs/automation.jsonl", description="Append-only action log")
    streaming_log: str = Field(default="logs/streaming.jsonl", description="Append-only streaming log")


class AutomationSection(BaseModel):
    """Orchestrator settings; ENABLE_AUTOMATION_FEATURES overrides `enabled`"""
    enabled: bool = Field(default=False)
    batch_size: int = Field(default=5, gt=0, le=50, description="Concurrent accounts per batch")
    run_budget_seconds: float = Field(default=240.0, gt=0, description="Wall-clock budget per run")
    min_rebalance_interval_hours: float = Field(default=6.0, ge=0)
    history_limit: int = Field(default=50, gt=0, description="Rebalancing history entries kept")


class TelemetrySection(BaseModel):
    base_url: str = Field(default="https://mt-client-api-v1.new-york.agiliumtrade.ai", min_length=1)
    token_env: str = Field(default="METAAPI_TOKEN", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_attempts: int = Field(default=1, ge=1, le=5, description="Attempts per fetch within one cycle")
    requests_per_second: float = Field(default=5.0, gt=0)
    burst: float = Field(default=2.0, ge=1)
    cache_ttl_seconds: float = Field(default=30.0, ge=0)


class StreamingSection(BaseModel):
    account_id: Optional[str] = Field(default=None, description="Master terminal account id")
    strategy_id: Optional[str] = Field(default=None, description="Strategy whose followers get trade alerts")
    keep_alive_seconds: float = Field(default=60.0, gt=0)
    base_delay_seconds: float = Field(default=5.0, ge=0)
    max_delay_seconds: float = Field(default=300.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, gt=0)
    circuit_cooldown_seconds: float = Field(default=900.0, ge=0)
    health_window_seconds: float = Field(default=120.0, gt=0)
    sync_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def check_backoff(self) -> "StreamingSection":
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"base_delay_seconds ({self.base_delay_seconds}) exceeds max_delay_seconds ({self.max_delay_seconds})"
            )
        return self


class StoreSection(BaseModel):
    path: str = Field(default="data/accounts.json", min_length=1)


class NotificationsSection(BaseModel):
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="NOTIFICATION_WEBHOOK_URL")
    dry_run: bool = Field(default=False)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class CopierSection(BaseModel):
    enabled: bool = Field(default=False, description="Reflect actions at the copy-trading venue")
    base_url: str = Field(default="https://copyfactory-api-v1.new-york.agiliumtrade.ai", min_length=1)
    token_env: str = Field(default="METAAPI_TOKEN", min_length=1)
    timeout_seconds: float = Field(default=15.0, gt=0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    requests_per_second: float = Field(default=2.0, gt=0)


class HealthSection(BaseModel):
    enabled: bool = Field(default=True)
    port: int = Field(default=8080, gt=0, lt=65536)
    auth_token_env: Optional[str] = Field(default=None, description="Env var holding a bearer token")


class MetricsSection(BaseModel):
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, gt=0, lt=65536)


class AppSchema(BaseModel):
    """Complete app.yaml schema; every section is optional and defaulted"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    automation: AutomationSection = Field(default_factory=AutomationSection)
    telemetry: TelemetrySection = Field(default_factory=TelemetrySection)
    streaming: StreamingSection = Field(default_factory=StreamingSection)
    store: StoreSection = Field(default_factory=StoreSection)
    notifications: NotificationsSection = Field(default_factory=NotificationsSection)
    copier: CopierSection = Field(default_factory=CopierSection)
    health: HealthSection = Field(default_factory=HealthSection)
    metrics: MetricsSection = Field(default_factory=MetricsSection)

    @field_validator("logging", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        if isinstance(v, dict) and isinstance(v.get("level"), str):
            v = {**v, "level": v["level"].upper()}
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None or getattr(mark, "line", None) is None:
        return message

    line, column = mark.line, mark.column
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}"

    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict (empty file -> {}).

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_app_config(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    app_path = Path(config_dir) / APP_CONFIG_FILE

    try:
        config = load_yaml_file(app_path)
        if not isinstance(config, dict):
            return [f"{APP_CONFIG_FILE}: top level must be a mapping"]
        AppSchema(**config)
        logger.info(f"{APP_CONFIG_FILE} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILE}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")

    return errors


def validate_sanity_checks(config: AppSchema) -> List[str]:
    """Cross-section consistency checks that a field schema cannot express."""
    errors = []
    if config.streaming.health_window_seconds <= config.streaming.poll_interval_seconds:
        errors.append(
            f"streaming: health_window_seconds ({config.streaming.health_window_seconds}) must exceed "
            f"poll_interval_seconds ({config.streaming.poll_interval_seconds})"
        )
    if config.telemetry.timeout_seconds * config.telemetry.max_attempts >= config.automation.run_budget_seconds:
        errors.append(
            "telemetry: timeout_seconds x max_attempts must stay below automation.run_budget_seconds"
        )
    if config.notifications.enabled and not (
        config.notifications.webhook_url or config.notifications.webhook_env or config.notifications.dry_run
    ):
        errors.append("notifications: enabled without webhook_url, webhook_env or dry_run")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)
    """
    config_path = Path(config_dir)
    all_errors = validate_app_config(config_path)

    if not all_errors:
        config = AppSchema(**load_yaml_file(config_path / APP_CONFIG_FILE))
        all_errors.extend(validate_sanity_checks(config))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")
    return all_errors


def load_app_config(config_dir: str = "config") -> AppSchema:
    """Validated configuration; raises ConfigurationError listing every problem."""
    errors = validate_all_configs(config_dir)
    if errors:
        raise ConfigurationError("Invalid configuration:\n  " + "\n  ".join(errors))
    return AppSchema(**load_yaml_file(Path(config_dir) / APP_CONFIG_FILE))


def validate_follower_account(account: FollowerAccount) -> List[str]:
    """
    Consistency problems in one account's automation thresholds.

    Returns:
        List of problems (empty if consistent)
    """
    problems = []
    rules = account.rebalancing_rules
    if rules is not None:
        if rules.min_multiplier > rules.max_multiplier:
            problems.append(
                f"min_multiplier ({rules.min_multiplier}) exceeds max_multiplier ({rules.max_multiplier})"
            )
        if rules.adjustment_step <= 0:
            problems.append(f"adjustment_step must be positive, got {rules.adjustment_step}")
        if not rules.min_multiplier <= account.risk_multiplier <= rules.max_multiplier:
            problems.append(
                f"risk_multiplier {account.risk_multiplier} outside "
                f"[{rules.min_multiplier}, {rules.max_multiplier}]"
            )
    if not 0 < account.max_drawdown_percent <= 100:
        problems.append(f"max_drawdown_percent must be in (0, 100], got {account.max_drawdown_percent}")
    if account.auto_resume_enabled and account.resume_drawdown_percent >= account.max_drawdown_percent:
        problems.append(
            f"resume_drawdown_percent ({account.resume_drawdown_percent}) must be below "
            f"max_drawdown_percent ({account.max_drawdown_percent})"
        )
    if account.max_consecutive_errors <= 0:
        problems.append(f"max_consecutive_errors must be positive, got {account.max_consecutive_errors}")
    if account.error_window_minutes <= 0:
        problems.append(f"error_window_minutes must be positive, got {account.error_window_minutes}")
    return problems


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    errors = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    print("\nAll configuration files are valid!\n")
    sys.exit(0)
