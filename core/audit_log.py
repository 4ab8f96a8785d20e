"""
Copy-trading automation: Audit Logger

Append-only JSONL trail of every applied automation action, every run and
every streaming transition. One JSON object per line; write failures are
logged and never propagate into the caller.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _sanitize(value: Any) -> Any:
    """Reduce a value to something json.dumps accepts."""
    if isinstance(value, BaseException):
        return {"name": type(value).__name__, "message": str(value)}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize(v) for v in value]
    if hasattr(value, "value") and not isinstance(value, (str, int, float, bool)):
        return _sanitize(value.value)  # Enum
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class AuditLogger:
    """
    Structured audit trail logger.

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Args:
            audit_file: Path to audit log file (default: logs/automation.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/automation.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            line = json.dumps(_sanitize(entry))
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write audit log {self.audit_file}: {e}")

    def log_action(self, action: str, user_id: str, account_id: str,
                   details: Optional[Dict[str, Any]] = None,
                   ts: Optional[datetime] = None) -> None:
        """Record an applied automation action (rebalance, auto-pause, ...)."""
        self._write({
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "type": "action",
            "action": action,
            "user_id": user_id,
            "account_id": account_id,
            "details": details or {},
        })

    def log_run(self, rule: str, result: Dict[str, Any], ts: Optional[datetime] = None) -> None:
        self._write({
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "type": "run",
            "rule": rule,
            "result": result,
        })

    def log_event(self, event: str, details: Optional[Dict[str, Any]] = None,
                  ts: Optional[datetime] = None) -> None:
        """Record a streaming connection transition."""
        self._write({
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "type": "streaming",
            "event": event,
            "details": details or {},
        })

    def get_recent(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries.

        Returns:
            List of log entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in lines[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(entries))
