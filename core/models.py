"""
Copy-trading automation: data model

Typed records for follower accounts, telemetry snapshots, streaming state and
the decisions produced by the decision engine. Account documents are loosely
shaped on disk; `FollowerAccount.from_document` is the single place where
defaults are applied and legacy documents are migrated.
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = 1

DEFAULT_MAX_DRAWDOWN_PCT = 20.0
DEFAULT_RESUME_DRAWDOWN_PCT = 15.0
DEFAULT_MAX_CONSECUTIVE_ERRORS = 5
DEFAULT_ERROR_WINDOW_MINUTES = 60
MAX_ERROR_HISTORY = 20

DAILY_SUMMARY_ALERT = "dailySummary"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetime, ISO string or epoch seconds; always return aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _camel_to_snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


class AccountStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    INACTIVE = "inactive"

    @classmethod
    def from_value(cls, value: Any) -> "AccountStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.INACTIVE


@dataclass
class RebalancingRules:
    min_multiplier: float = 0.1
    max_multiplier: float = 10.0
    adjustment_step: float = 0.1
    # Optional trigger conditions; None disables the trigger
    drawdown_trigger_percent: Optional[float] = None
    profit_trigger_percent: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RebalancingRules"]:
        if not data:
            return None
        data = {_camel_to_snake(k): v for k, v in data.items()}
        defaults = cls()
        return cls(
            min_multiplier=_to_float(data.get("min_multiplier"), defaults.min_multiplier),
            max_multiplier=_to_float(data.get("max_multiplier"), defaults.max_multiplier),
            adjustment_step=_to_float(data.get("adjustment_step"), defaults.adjustment_step),
            drawdown_trigger_percent=_to_float(data.get("drawdown_trigger_percent")),
            profit_trigger_percent=_to_float(data.get("profit_trigger_percent")),
        )


@dataclass
class RebalancingHistoryEntry:
    timestamp: datetime
    old_multiplier: float
    new_multiplier: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "old_multiplier": self.old_multiplier,
            "new_multiplier": self.new_multiplier,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalancingHistoryEntry":
        data = {_camel_to_snake(k): v for k, v in data.items()}
        return cls(
            timestamp=parse_timestamp(data.get("timestamp") or data.get("date")) or utcnow(),
            old_multiplier=float(data.get("old_multiplier", 0.0)),
            new_multiplier=float(data.get("new_multiplier", 0.0)),
            reason=str(data.get("reason", "")),
        )


@dataclass
class AlertPreferences:
    trade_alerts_enabled: bool = False
    alert_types: List[str] = field(default_factory=list)
    min_trade_size_for_alert: float = 0.1
    min_profit_for_alert: float = 100.0
    min_loss_for_alert: float = -100.0

    @property
    def daily_summary_enabled(self) -> bool:
        return self.trade_alerts_enabled and DAILY_SUMMARY_ALERT in self.alert_types


@dataclass
class FollowerAccount:
    """One linked brokerage account that mirrors a master strategy."""

    account_id: str
    user_id: str
    status: AccountStatus = AccountStatus.ACTIVE
    label: Optional[str] = None
    strategy_id: Optional[str] = None
    reverse_trading: bool = False
    max_risk_percent: Optional[float] = None

    # Risk configuration
    risk_multiplier: float = 1.0
    original_risk_multiplier: float = 1.0
    rebalancing_rules: Optional[RebalancingRules] = None

    # Automation toggles
    auto_rebalancing_enabled: bool = False
    auto_pause_enabled: bool = False
    max_drawdown_percent: float = DEFAULT_MAX_DRAWDOWN_PCT
    auto_resume_enabled: bool = False
    resume_drawdown_percent: float = DEFAULT_RESUME_DRAWDOWN_PCT
    auto_disconnect_enabled: bool = False
    max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS
    error_window_minutes: int = DEFAULT_ERROR_WINDOW_MINUTES

    # Runtime counters
    consecutive_error_count: int = 0
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None
    auto_paused_at: Optional[datetime] = None
    auto_pause_reason: Optional[str] = None
    auto_disconnected_at: Optional[datetime] = None
    auto_disconnect_reason: Optional[str] = None
    last_rebalanced_at: Optional[datetime] = None
    rebalancing_history: List[RebalancingHistoryEntry] = field(default_factory=list)
    error_history: List[Dict[str, Any]] = field(default_factory=list)

    alerts: AlertPreferences = field(default_factory=AlertPreferences)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    schema_version: int = SCHEMA_VERSION

    @property
    def is_auto_paused(self) -> bool:
        return self.auto_paused_at is not None

    @property
    def is_auto_disconnected(self) -> bool:
        return self.auto_disconnected_at is not None

    @property
    def automation_enabled(self) -> bool:
        return any((
            self.auto_rebalancing_enabled,
            self.auto_pause_enabled,
            self.auto_resume_enabled,
            self.auto_disconnect_enabled,
            self.alerts.trade_alerts_enabled,
        ))

    def account_age_days(self, now: Optional[datetime] = None) -> Optional[int]:
        if not self.created_at:
            return None
        now = now or utcnow()
        return max(0, int((now - self.created_at).total_seconds() // 86400))

    # ---- document boundary -------------------------------------------------

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FollowerAccount":
        """Build a typed account from a stored document, applying defaults."""
        data = migrate_document(doc)

        risk_multiplier = _to_float(data.get("risk_multiplier"), 1.0) or 1.0
        original = _to_float(data.get("original_risk_multiplier")) or risk_multiplier

        alerts_raw = data.get("alerts") or {}
        alerts_raw = {_camel_to_snake(k): v for k, v in alerts_raw.items()}
        alert_defaults = AlertPreferences()
        alerts = AlertPreferences(
            trade_alerts_enabled=bool(alerts_raw.get("trade_alerts_enabled", False)),
            alert_types=list(alerts_raw.get("alert_types") or []),
            min_trade_size_for_alert=_to_float(
                alerts_raw.get("min_trade_size_for_alert"), alert_defaults.min_trade_size_for_alert),
            min_profit_for_alert=_to_float(
                alerts_raw.get("min_profit_for_alert"), alert_defaults.min_profit_for_alert),
            min_loss_for_alert=_to_float(
                alerts_raw.get("min_loss_for_alert"), alert_defaults.min_loss_for_alert),
        )

        return cls(
            account_id=str(data["account_id"]),
            user_id=str(data.get("user_id") or ""),
            status=AccountStatus.from_value(data.get("status", "active")),
            label=data.get("label"),
            strategy_id=data.get("strategy_id"),
            reverse_trading=bool(data.get("reverse_trading", False)),
            max_risk_percent=_to_float(data.get("max_risk_percent")),
            risk_multiplier=risk_multiplier,
            original_risk_multiplier=original,
            rebalancing_rules=RebalancingRules.from_dict(data.get("rebalancing_rules")),
            auto_rebalancing_enabled=bool(data.get("auto_rebalancing_enabled", False)),
            auto_pause_enabled=bool(data.get("auto_pause_enabled", False)),
            max_drawdown_percent=_to_float(data.get("max_drawdown_percent"), DEFAULT_MAX_DRAWDOWN_PCT),
            auto_resume_enabled=bool(data.get("auto_resume_enabled", False)),
            resume_drawdown_percent=_to_float(data.get("resume_drawdown_percent"), DEFAULT_RESUME_DRAWDOWN_PCT),
            auto_disconnect_enabled=bool(data.get("auto_disconnect_enabled", False)),
            max_consecutive_errors=_to_int(data.get("max_consecutive_errors"), DEFAULT_MAX_CONSECUTIVE_ERRORS),
            error_window_minutes=_to_int(data.get("error_window_minutes"), DEFAULT_ERROR_WINDOW_MINUTES),
            consecutive_error_count=_to_int(data.get("consecutive_error_count"), 0),
            last_error_at=parse_timestamp(data.get("last_error_at")),
            last_error=data.get("last_error"),
            auto_paused_at=parse_timestamp(data.get("auto_paused_at")),
            auto_pause_reason=data.get("auto_pause_reason"),
            auto_disconnected_at=parse_timestamp(data.get("auto_disconnected_at")),
            auto_disconnect_reason=data.get("auto_disconnect_reason"),
            last_rebalanced_at=parse_timestamp(data.get("last_rebalanced_at")),
            rebalancing_history=[
                RebalancingHistoryEntry.from_dict(entry)
                for entry in (data.get("rebalancing_history") or [])
            ],
            error_history=list(data.get("error_history") or []),
            alerts=alerts,
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            schema_version=SCHEMA_VERSION,
        )

    def to_document(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc["status"] = self.status.value
        doc["rebalancing_history"] = [entry.to_dict() for entry in self.rebalancing_history]
        for key in ("last_error_at", "auto_paused_at", "auto_disconnected_at",
                    "last_rebalanced_at", "created_at", "updated_at"):
            doc[key] = format_timestamp(getattr(self, key))
        return doc


_LEGACY_ALERT_KEYS = (
    "trade_alerts_enabled",
    "alert_types",
    "min_trade_size_for_alert",
    "min_profit_for_alert",
    "min_loss_for_alert",
)


def migrate_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring a stored document up to SCHEMA_VERSION.

    Version 0 documents were written with camelCase keys and flat alert
    preferences; version 1 uses snake_case keys and a nested `alerts` block.
    """
    version = _to_int(doc.get("schema_version", doc.get("schemaVersion")), 0)
    if version >= SCHEMA_VERSION:
        return dict(doc)

    data = {_camel_to_snake(k): v for k, v in doc.items()}
    alerts = dict(data.get("alerts") or {})
    for key in _LEGACY_ALERT_KEYS:
        if key in data:
            alerts.setdefault(key, data.pop(key))
    data["alerts"] = alerts
    if "account_id" not in data and "id" in data:
        data["account_id"] = data["id"]
    data["schema_version"] = SCHEMA_VERSION
    return data


@dataclass
class Position:
    id: str
    symbol: str
    type: str = ""
    volume: float = 0.0
    profit: float = 0.0
    open_price: Optional[float] = None
    current_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Position":
        return cls(
            id=str(payload.get("id") or payload.get("ticket") or payload.get("positionId") or ""),
            symbol=str(payload.get("symbol") or ""),
            type=str(payload.get("type") or payload.get("tradeType") or ""),
            volume=_to_float(payload.get("volume", payload.get("lots")), 0.0),
            profit=_to_float(payload.get("profit", payload.get("unrealizedProfit")), 0.0),
            open_price=_to_float(payload.get("openPrice")),
            current_price=_to_float(payload.get("currentPrice")),
            stop_loss=_to_float(payload.get("stopLoss")),
            take_profit=_to_float(payload.get("takeProfit")),
        )


@dataclass
class AccountStats:
    """Point-in-time account metrics. Never persisted by the automation core."""

    account_id: str
    balance: float
    equity: float
    margin: float = 0.0
    free_margin: float = 0.0
    margin_level: Optional[float] = None
    open_positions: int = 0
    account_age_days: Optional[int] = None
    fetched_at: datetime = field(default_factory=utcnow)
    source: str = "rest"

    @property
    def profit_loss(self) -> float:
        return self.equity - self.balance

    @property
    def equity_ratio(self) -> float:
        return self.equity / self.balance if self.balance > 0 else 1.0

    @property
    def drawdown_percent(self) -> float:
        """(balance - equity) / balance * 100; 0 when balance is zero or missing."""
        if not self.balance or self.balance <= 0:
            return 0.0
        return (self.balance - self.equity) / self.balance * 100.0

    @property
    def has_exposure(self) -> bool:
        return self.open_positions > 0

    @property
    def margin_at_risk(self) -> bool:
        # Margin level is meaningless without exposure (0 means "no margin used")
        if not self.has_exposure or not self.margin_level:
            return False
        return self.margin_level < 200.0


@dataclass
class ClosedTrade:
    account_id: str
    symbol: str
    side: str
    volume: float
    profit: Optional[float] = None
    pips: Optional[float] = None
    trade_id: Optional[str] = None
    open_time: Optional[datetime] = None
    close_time: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.close_time is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["open_time"] = format_timestamp(self.open_time)
        data["close_time"] = format_timestamp(self.close_time)
        return data


@dataclass
class RebalanceDecision:
    should_rebalance: bool
    reason: Optional[str] = None
    new_multiplier: Optional[float] = None
    trigger: Optional[str] = None  # "loss" | "profit" | "drift"


@dataclass
class PauseDecision:
    should_pause: bool
    reason: Optional[str] = None
    drawdown: float = 0.0


@dataclass
class ResumeDecision:
    should_resume: bool
    reason: Optional[str] = None
    drawdown: float = 0.0


@dataclass
class AlertDecision:
    should_send: bool
    alert_type: Optional[str] = None
    reason: Optional[str] = None


class StreamingPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCHRONIZING = "synchronizing"
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass
class StreamingState:
    """Live view of the single upstream terminal subscription."""

    phase: StreamingPhase = StreamingPhase.DISCONNECTED
    account_id: Optional[str] = None
    last_event: Optional[datetime] = None
    reconnect_attempts: int = 0
    consecutive_failures: int = 0
    total_reconnects: int = 0
    health_score: int = 0
    is_circuit_open: bool = False
    circuit_opened_at: Optional[datetime] = None
    start_time: Optional[datetime] = None
    error: Optional[str] = None
    is_healthy: bool = False

    @property
    def is_connected(self) -> bool:
        return self.phase in (StreamingPhase.CONNECTED, StreamingPhase.DEGRADED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "is_connected": self.is_connected,
            "is_healthy": self.is_healthy,
            "account_id": self.account_id,
            "last_event": format_timestamp(self.last_event),
            "reconnect_attempts": self.reconnect_attempts,
            "consecutive_failures": self.consecutive_failures,
            "total_reconnects": self.total_reconnects,
            "health_score": self.health_score,
            "is_circuit_open": self.is_circuit_open,
            "circuit_opened_at": format_timestamp(self.circuit_opened_at),
            "start_time": format_timestamp(self.start_time),
            "error": self.error,
        }
