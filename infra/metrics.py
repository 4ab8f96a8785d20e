"""Prometheus-backed metrics hooks for automation runs, telemetry and streaming."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "copytrade_"


@dataclass
class RunStats:
    rule: str
    checked: int
    acted: int
    skipped: int
    errors: int
    duration_seconds: float
    partial: bool = False


class MetricsRecorder:
    """
    Expose automation stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_run: Dict[str, RunStats] = {}
        self._telemetry_errors: Dict[str, int] = {}

        if not self._enabled:
            self._run_summary = None
            self._run_counter = None
            self._action_counter = None
            self._telemetry_latency = None
            self._telemetry_errors_counter = None
            self._stream_connected = None
            self._stream_health = None
            self._circuit_gauge = None
            self._reconnect_counter = None
            return

        self._run_summary = Summary(  # type: ignore[assignment]
            "copytrade_automation_run_duration_seconds",
            "Duration of an automation run",
            labelnames=("rule",),
        )
        self._run_counter = Counter(  # type: ignore[assignment]
            "copytrade_automation_runs_total",
            "Automation runs by rule and outcome",
            labelnames=("rule", "outcome"),
        )
        self._action_counter = Counter(  # type: ignore[assignment]
            "copytrade_automation_accounts_total",
            "Per-account results of automation runs",
            labelnames=("rule", "result"),  # result: checked, acted, skipped, error
        )
        self._telemetry_latency = Summary(  # type: ignore[assignment]
            "copytrade_telemetry_latency_seconds",
            "Latency of telemetry fetches",
            labelnames=("endpoint", "status"),
        )
        self._telemetry_errors_counter = Counter(  # type: ignore[assignment]
            "copytrade_telemetry_errors_total",
            "Telemetry failures by kind",
            labelnames=("kind",),  # kind: unavailable, rejected
        )
        self._stream_connected = Gauge(  # type: ignore[assignment]
            "copytrade_streaming_connected",
            "Streaming connection state (1=connected)",
        )
        self._stream_health = Gauge(  # type: ignore[assignment]
            "copytrade_streaming_health_score",
            "Streaming health score (0-100)",
        )
        self._circuit_gauge = Gauge(  # type: ignore[assignment]
            "copytrade_streaming_circuit_open",
            "Streaming circuit breaker state (0=closed, 1=open)",
        )
        self._reconnect_counter = Counter(  # type: ignore[assignment]
            "copytrade_streaming_reconnects_total",
            "Streaming reconnect attempts by outcome",
            labelnames=("outcome",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics exporter to %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_run(self, stats: RunStats) -> None:
        self._last_run[stats.rule] = stats
        if not self._enabled:
            return
        assert self._run_summary and self._run_counter and self._action_counter
        outcome = "partial" if stats.partial else ("errors" if stats.errors else "ok")
        self._run_summary.labels(rule=stats.rule).observe(stats.duration_seconds)
        self._run_counter.labels(rule=stats.rule, outcome=outcome).inc()
        for result, count in (("checked", stats.checked), ("acted", stats.acted),
                              ("skipped", stats.skipped), ("error", stats.errors)):
            if count:
                self._action_counter.labels(rule=stats.rule, result=result).inc(count)

    def record_telemetry_call(self, endpoint: str, duration: float, status: str) -> None:
        if self._enabled and self._telemetry_latency:
            self._telemetry_latency.labels(endpoint=endpoint, status=status).observe(duration)

    def record_telemetry_error(self, kind: str) -> None:
        self._telemetry_errors[kind] = self._telemetry_errors.get(kind, 0) + 1
        if self._enabled and self._telemetry_errors_counter:
            self._telemetry_errors_counter.labels(kind=kind).inc()

    def record_streaming_state(self, connected: bool, health_score: int, circuit_open: bool) -> None:
        if not self._enabled:
            return
        assert self._stream_connected and self._stream_health and self._circuit_gauge
        self._stream_connected.set(1 if connected else 0)
        self._stream_health.set(max(0, min(100, health_score)))
        self._circuit_gauge.set(1 if circuit_open else 0)

    def record_reconnect(self, outcome: str) -> None:
        if self._enabled and self._reconnect_counter:
            self._reconnect_counter.labels(outcome=outcome).inc()

    def last_run(self, rule: str) -> Optional[RunStats]:
        return self._last_run.get(rule)

    def telemetry_error_snapshot(self) -> Dict[str, int]:
        return dict(self._telemetry_errors)


__all__ = ["MetricsRecorder", "RunStats"]
