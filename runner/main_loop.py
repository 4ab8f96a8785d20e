"""
copytrade-automation Runner

Wires the automation core from config/app.yaml and exposes it as a CLI.

Flow:
1. Validate config (abort on any schema/sanity error)
2. Build store, telemetry, streaming manager, gateway, notifier, orchestrator
3. Run one automation rule and print its JSON result, or
4. `serve`: control server + streaming keep-alive until SIGINT/SIGTERM

Each automation subcommand is one invocation of a periodic trigger; schedule
them from cron (rebalance hourly, risk-check every 5 minutes, disconnect-check
every 15 minutes, daily-summary once a day).
"""

import json
import logging
import os
import signal
import sys
import threading
from dataclasses import asdict
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from core.audit_log import AuditLogger
from core.automation import AutomationConfig, AutomationOrchestrator, is_automation_enabled
from core.copier import CopyFactoryGateway
from core.exceptions import AutomationError, ConfigurationError
from core.retry import RetryPolicy
from core.streaming import PollingStreamSource, StreamingConnectionManager
from core.telemetry import RestTelemetryBackend, TelemetryClient
from infra.account_store import JsonFileAccountStore
from infra.healthcheck import AUTOMATION_RULES, ControlServer
from infra.metrics import MetricsRecorder
from infra.notifications import WebhookNotificationSink
from infra.rate_limiter import RateLimiter
from tools.config_validator import AppSchema, load_app_config, validate_follower_account

logger = logging.getLogger(__name__)


def _configure_logging(config: AppSchema) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def _require_env(name: str, purpose: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ConfigurationError(f"{purpose} requires environment variable {name}")
    return value


class AutomationRunner:
    """
    Process wiring for the automation core.

    Responsibilities:
    - Load and validate config
    - Build one instance of every component and inject dependencies
    - Serve the control API and keep the streaming connection alive
    """

    def __init__(self, config_dir: str = "config", config: Optional[AppSchema] = None):
        self.config_dir = Path(config_dir)
        self.config = config or load_app_config(config_dir)
        cfg = self.config

        self.metrics = MetricsRecorder(enabled=cfg.metrics.enabled, port=cfg.metrics.port)
        self.automation_log = AuditLogger(audit_file=cfg.logging.automation_log)
        self.streaming_log = AuditLogger(audit_file=cfg.logging.streaming_log)

        self.rate_limiter = RateLimiter(
            limits={
                "telemetry": cfg.telemetry.requests_per_second,
                "copier": cfg.copier.requests_per_second,
            },
            burst_multiplier=cfg.telemetry.burst,
        )

        token = _require_env(cfg.telemetry.token_env, "Telemetry")
        self.backend = RestTelemetryBackend(
            token,
            base_url=os.path.expandvars(cfg.telemetry.base_url),
            timeout_seconds=cfg.telemetry.timeout_seconds,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
        )

        self.streaming = StreamingConnectionManager(
            source_factory=lambda: PollingStreamSource(
                self.backend, poll_interval_seconds=cfg.streaming.poll_interval_seconds
            ),
            account_id=cfg.streaming.account_id,
            audit=self.streaming_log,
            metrics=self.metrics,
            base_delay_seconds=cfg.streaming.base_delay_seconds,
            max_delay_seconds=cfg.streaming.max_delay_seconds,
            max_reconnect_attempts=cfg.streaming.max_reconnect_attempts,
            circuit_cooldown_seconds=cfg.streaming.circuit_cooldown_seconds,
            health_window_seconds=cfg.streaming.health_window_seconds,
            sync_timeout_seconds=cfg.streaming.sync_timeout_seconds,
        )

        self.telemetry = TelemetryClient(
            self.backend,
            retry_policy=RetryPolicy(max_attempts=cfg.telemetry.max_attempts, base_delay=0.5, max_delay=2.0),
            live_view=self.streaming,
            cache_ttl_seconds=cfg.telemetry.cache_ttl_seconds,
            metrics=self.metrics,
        )

        self.store = JsonFileAccountStore(cfg.store.path)

        self.gateway = None
        if cfg.copier.enabled:
            self.gateway = CopyFactoryGateway(
                _require_env(cfg.copier.token_env, "Copier"),
                base_url=os.path.expandvars(cfg.copier.base_url),
                timeout_seconds=cfg.copier.timeout_seconds,
                retry_policy=RetryPolicy(max_attempts=cfg.copier.max_attempts, base_delay=1.0, max_delay=10.0),
                rate_limiter=self.rate_limiter,
            )

        self.notifier = None
        if cfg.notifications.enabled:
            self.notifier = WebhookNotificationSink.from_config(cfg.notifications.model_dump())

        self.orchestrator = AutomationOrchestrator(
            self.store,
            self.telemetry,
            config=AutomationConfig(
                enabled=cfg.automation.enabled,
                batch_size=cfg.automation.batch_size,
                run_budget_seconds=cfg.automation.run_budget_seconds,
                min_rebalance_interval_hours=cfg.automation.min_rebalance_interval_hours,
                history_limit=cfg.automation.history_limit,
            ),
            gateway=self.gateway,
            notifier=self.notifier,
            audit=self.automation_log,
            metrics=self.metrics,
        )

        if cfg.streaming.strategy_id:
            strategy_id = cfg.streaming.strategy_id
            self.streaming.add_closed_trade_listener(
                lambda trade: self.orchestrator.process_closed_trade(trade, strategy_id=strategy_id)
            )

        self.control_server: Optional[ControlServer] = None
        self._stop_event = threading.Event()

        logger.info(
            f"Initialized {cfg.app.name}: automation_enabled={self.orchestrator.enabled}, "
            f"copier={'on' if self.gateway else 'off'}, notifications={'on' if self.notifier else 'off'}"
        )

    # ---- health ------------------------------------------------------------

    def health_status(self) -> Dict[str, Any]:
        streaming = self.streaming.get_status() if self.config.streaming.account_id else None
        last_runs = {}
        for rule in AUTOMATION_RULES:
            stats = self.metrics.last_run(rule)
            if stats is not None:
                last_runs[rule] = asdict(stats)
        return {
            "ok": streaming is None or not streaming.is_circuit_open,
            "app": self.config.app.name,
            "automation_enabled": is_automation_enabled(self.config.automation.enabled),
            "streaming": streaming.to_dict() if streaming else None,
            "last_runs": last_runs,
            "telemetry_errors": self.metrics.telemetry_error_snapshot(),
            "metrics_enabled": self.metrics.is_enabled(),
        }

    # ---- one-shot commands -------------------------------------------------

    def run_rule(self, rule: str, **kwargs) -> Dict[str, Any]:
        return self.orchestrator.run(rule, **kwargs).to_dict()

    def risk_status(self, account_id: str) -> Dict[str, Any]:
        return self.orchestrator.risk_status(account_id)

    def check_accounts(self) -> Dict[str, Any]:
        problems = {}
        for account in self.store.list_all():
            found = validate_follower_account(account)
            if found:
                problems[account.account_id] = found
        return {"accounts_with_problems": len(problems), "problems": problems}

    # ---- long-running ------------------------------------------------------

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received - stopping")
        self._stop_event.set()

    def serve(self) -> None:
        """Control server + streaming keep-alive until a shutdown signal."""
        cfg = self.config
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.metrics.start()
        if cfg.health.enabled:
            auth_token = os.getenv(cfg.health.auth_token_env, "") if cfg.health.auth_token_env else None
            self.control_server = ControlServer(
                cfg.health.port,
                self.health_status,
                streaming=self.streaming,
                orchestrator=self.orchestrator,
                auth_token=auth_token,
            )
            self.control_server.start()

        if cfg.streaming.account_id:
            self.streaming.start()

        try:
            while not self._stop_event.wait(cfg.streaming.keep_alive_seconds):
                if cfg.streaming.account_id:
                    self.streaming.keep_alive()
        finally:
            self.streaming.stop()
            if self.control_server is not None:
                self.control_server.stop()
            logger.info("Runner stopped")


def _streaming_command(config: AppSchema, action: str, url: Optional[str]) -> Dict[str, Any]:
    """Streaming control goes through the running `serve` process."""
    base = (url or f"http://127.0.0.1:{config.health.port}").rstrip("/")
    headers = {}
    if config.health.auth_token_env and os.getenv(config.health.auth_token_env):
        headers["Authorization"] = f"Bearer {os.getenv(config.health.auth_token_env)}"
    if action == "status":
        response = requests.get(f"{base}/streaming/status", headers=headers, timeout=10)
    else:
        response = requests.post(f"{base}/streaming/{action}", headers=headers, json={}, timeout=30)
    response.raise_for_status()
    return response.json()


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Copy-trading automation")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("rebalance", help="Adjust risk multipliers from fresh telemetry")
    sub.add_parser("risk-check", help="Auto-pause / auto-resume on drawdown")
    sub.add_parser("disconnect-check", help="Auto-disconnect accounts with repeated telemetry errors")
    summary = sub.add_parser("daily-summary", help="Send daily summaries (default: yesterday, UTC)")
    summary.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")

    risk = sub.add_parser("risk-status", help="Risk summary for one account")
    risk.add_argument("account_id")
    sub.add_parser("check-accounts", help="Report inconsistent account thresholds")

    streaming = sub.add_parser("streaming", help="Control the streaming connection of a running server")
    streaming.add_argument("action", choices=("start", "stop", "status", "reset"))
    streaming.add_argument("--url", default=None, help="Control server URL (default: local health port)")

    sub.add_parser("serve", help="Run control server and streaming keep-alive")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = load_app_config(args.config_dir)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 2
    _configure_logging(config)

    try:
        if args.command == "streaming":
            output = _streaming_command(config, args.action, args.url)
        else:
            runner = AutomationRunner(config_dir=args.config_dir, config=config)
            if args.command == "serve":
                runner.serve()
                return 0
            if args.command == "risk-status":
                output = runner.risk_status(args.account_id)
            elif args.command == "check-accounts":
                output = runner.check_accounts()
            elif args.command == "daily-summary":
                output = runner.run_rule(args.command, day=args.date)
            else:
                output = runner.run_rule(args.command)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except (AutomationError, requests.RequestException) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
