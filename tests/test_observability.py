"""
Tests for the audit trail and the metrics recorder
"""

from datetime import datetime, timezone

from prometheus_client import REGISTRY

from core.audit_log import AuditLogger
from core.models import AccountStatus
from infra.metrics import MetricsRecorder, RunStats


class TestAuditLogger:

    def test_entries_are_typed_and_most_recent_first(self, tmp_path):
        audit = AuditLogger(audit_file=str(tmp_path / "audit" / "automation.jsonl"))
        audit.log_action("auto_pause", "user-1", "acc-1", {"drawdown": 21.5, "status": AccountStatus.PAUSED})
        audit.log_run("risk-check", {"checked": 1, "paused": 1})
        audit.log_event("circuit_opened", {"error": ValueError("boom")})

        recent = audit.get_recent(3)
        assert [e["type"] for e in recent] == ["streaming", "run", "action"]
        assert recent[0]["details"]["error"] == {"name": "ValueError", "message": "boom"}
        assert recent[2]["details"]["status"] == "paused"
        assert recent[2]["user_id"] == "user-1"

    def test_explicit_timestamp(self, tmp_path):
        audit = AuditLogger(audit_file=str(tmp_path / "a.jsonl"))
        ts = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        audit.log_event("connected", ts=ts)
        assert audit.get_recent(1)[0]["timestamp"] == ts.isoformat()

    def test_missing_file_reads_empty(self, tmp_path):
        audit = AuditLogger(audit_file=str(tmp_path / "a.jsonl"))
        assert audit.get_recent() == []

    def test_corrupt_lines_are_skipped(self, tmp_path):
        path = tmp_path / "a.jsonl"
        audit = AuditLogger(audit_file=str(path))
        audit.log_event("connected")
        with open(path, "a", encoding="utf-8") as f:
            f.write("{not json\n")
        assert [e["event"] for e in audit.get_recent(5)] == ["connected"]


class TestMetricsRecorder:

    def test_singleton(self):
        assert MetricsRecorder(enabled=False) is MetricsRecorder(enabled=True)

    def test_disabled_still_tracks_last_run(self):
        metrics = MetricsRecorder(enabled=False)
        metrics.observe_run(RunStats("rebalance", checked=3, acted=1, skipped=0, errors=0, duration_seconds=0.2))
        metrics.record_telemetry_error("unavailable")
        metrics.record_streaming_state(True, 90, False)
        assert metrics.last_run("rebalance").acted == 1
        assert metrics.last_run("risk-check") is None
        assert metrics.telemetry_error_snapshot() == {"unavailable": 1}

    def test_enabled_exports_collectors(self):
        metrics = MetricsRecorder(enabled=True, port=0)
        metrics.observe_run(RunStats("risk-check", checked=2, acted=1, skipped=1, errors=0,
                                     duration_seconds=0.5, partial=True))
        metrics.record_telemetry_error("rejected")
        metrics.record_streaming_state(True, 120, False)
        metrics.record_reconnect("failure")

        sample = REGISTRY.get_sample_value
        assert sample("copytrade_automation_runs_total", {"rule": "risk-check", "outcome": "partial"}) == 1.0
        assert sample("copytrade_automation_accounts_total", {"rule": "risk-check", "result": "skipped"}) == 1.0
        assert sample("copytrade_telemetry_errors_total", {"kind": "rejected"}) == 1.0
        assert sample("copytrade_streaming_health_score") == 100.0
        assert sample("copytrade_streaming_reconnects_total", {"outcome": "failure"}) == 1.0

    def test_reset_unregisters_collectors(self):
        MetricsRecorder(enabled=True)
        MetricsRecorder._reset_for_testing()
        # Registering again must not raise a duplicate timeseries error
        MetricsRecorder(enabled=True).record_reconnect("success")
