"""
Copy-trading automation: Automation Orchestrator

Drives the decision engine across the account population once per external
trigger (cron, CLI, HTTP). Consistency model: every run re-derives state
from fresh telemetry and the current account document, so runs are safe
under at-least-once, out-of-order invocation. A second run over unchanged
telemetry makes no further changes.

Per run:
1. list accounts with any automation flag; skip those the rule does not
   apply to (recorded as a skip reason)
2. evaluate the rest in batches of `batch_size` concurrent workers; each
   batch is awaited fully before the next starts
3. stop starting new batches once the run budget is spent; remaining
   accounts are skipped with `run_budget_exhausted` and the run is partial
4. per-account failures land in `errors[]`; nothing aborts the run
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from core import decision_engine
from core.exceptions import (
    AutomationError,
    CopierError,
    StoreError,
    TelemetryError,
)
from core.models import (
    AccountStats,
    AccountStatus,
    ClosedTrade,
    FollowerAccount,
    RebalancingHistoryEntry,
    utcnow,
)
from infra.metrics import RunStats

logger = logging.getLogger(__name__)

AUTOMATION_ENV_FLAG = "ENABLE_AUTOMATION_FEATURES"

RULE_REBALANCE = "rebalance"
RULE_RISK_CHECK = "risk-check"
RULE_DISCONNECT_CHECK = "disconnect-check"
RULE_DAILY_SUMMARY = "daily-summary"
RULE_TRADE_ALERT = "trade-alert"

ACTION_COUNTERS = {
    RULE_REBALANCE: ("rebalanced",),
    RULE_RISK_CHECK: ("paused", "resumed"),
    RULE_DISCONNECT_CHECK: ("disconnected",),
    RULE_DAILY_SUMMARY: ("sent",),
    RULE_TRADE_ALERT: ("sent",),
}

SKIP_DISABLED = "disabled"
SKIP_TERMINAL = "terminal_state"
SKIP_NOT_ACTIVE = "not_active"
SKIP_NOT_CONFIGURED = "not_configured"
SKIP_TOO_SOON = "too_soon"
SKIP_BUDGET = "run_budget_exhausted"
SKIP_NO_NOTIFIER = "notifications_unavailable"


def is_automation_enabled(configured: bool, environ: Optional[Dict[str, str]] = None) -> bool:
    """`ENABLE_AUTOMATION_FEATURES` overrides the configured value when set."""
    environ = os.environ if environ is None else environ
    raw = environ.get(AUTOMATION_ENV_FLAG)
    if raw is None or raw.strip() == "":
        return bool(configured)
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AutomationConfig:
    enabled: bool = False
    batch_size: int = 5
    run_budget_seconds: float = 240.0
    min_rebalance_interval_hours: float = decision_engine.DEFAULT_MIN_REBALANCE_INTERVAL_HOURS
    history_limit: int = 50


@dataclass
class AccountOutcome:
    account_id: str
    checked: bool = False
    action: Optional[str] = None
    skip_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunResult:
    rule: str
    checked: int = 0
    actions: Dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    partial: bool = False
    disabled: bool = False
    message: Optional[str] = None
    duration_seconds: float = 0.0

    def __post_init__(self):
        for name in ACTION_COUNTERS.get(self.rule, ()):
            self.actions.setdefault(name, 0)

    def skip(self, reason: str, count: int = 1) -> None:
        self.skipped += count
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + count

    def add(self, outcome: AccountOutcome) -> None:
        if outcome.checked:
            self.checked += 1
        if outcome.action:
            self.actions[outcome.action] = self.actions.get(outcome.action, 0) + 1
        if outcome.skip_reason:
            self.skip(outcome.skip_reason)
        if outcome.error:
            self.errors.append(outcome.error)

    @property
    def acted(self) -> int:
        return sum(self.actions.values())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"rule": self.rule, "checked": self.checked}
        data.update(self.actions)
        data.update({
            "skipped": self.skipped,
            "skip_reasons": dict(self.skip_reasons),
            "errors": list(self.errors),
            "partial": self.partial,
            "duration_seconds": round(self.duration_seconds, 3),
        })
        if self.disabled:
            data["disabled"] = True
        if self.message:
            data["message"] = self.message
        return data


Selector = Callable[[FollowerAccount], Optional[str]]
Evaluator = Callable[[FollowerAccount], AccountOutcome]


class AutomationOrchestrator:
    """
    Sole writer of FollowerAccount automation fields.

    `gateway` (subscription changes at the venue) and `notifier` are optional;
    without a gateway only the Account Store is updated.
    """

    def __init__(
        self,
        store,
        telemetry,
        config: Optional[AutomationConfig] = None,
        gateway=None,
        notifier=None,
        audit=None,
        metrics=None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.store = store
        self.telemetry = telemetry
        self.config = config or AutomationConfig()
        self.gateway = gateway
        self.notifier = notifier
        self._audit = audit
        self._metrics = metrics
        self._clock = clock
        self._monotonic = monotonic
        self._environ = environ

    @property
    def enabled(self) -> bool:
        return is_automation_enabled(self.config.enabled, self._environ)

    # ---- run machinery -----------------------------------------------------

    def _execute(
        self,
        rule: str,
        select: Selector,
        evaluate: Evaluator,
        accounts: Optional[List[FollowerAccount]] = None,
    ) -> RunResult:
        started = self._monotonic()
        result = RunResult(rule=rule)

        if not self.enabled:
            result.disabled = True
            result.message = "Automation features are disabled"
            logger.info(f"Automation run '{rule}' skipped: automation disabled")
            return result

        if accounts is None:
            try:
                accounts = self.store.list_automation_enabled()
            except StoreError as e:
                logger.error(f"Automation run '{rule}' could not list accounts: {e}")
                result.errors.append(f"store: {e}")
                return self._finish(result, started)

        pending: List[FollowerAccount] = []
        for account in accounts:
            reason = select(account)
            if reason:
                result.skip(reason)
            else:
                pending.append(account)

        deadline = started + self.config.run_budget_seconds
        batch_size = max(1, self.config.batch_size)
        for offset in range(0, len(pending), batch_size):
            if self._monotonic() >= deadline:
                remaining = len(pending) - offset
                logger.warning(f"Automation run '{rule}' out of budget; skipping {remaining} accounts")
                result.skip(SKIP_BUDGET, remaining)
                result.partial = True
                break
            batch = pending[offset:offset + batch_size]
            with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix=f"automation-{rule}") as pool:
                outcomes = list(pool.map(lambda a: self._evaluate_isolated(evaluate, a), batch))
            for outcome in outcomes:
                result.add(outcome)

        return self._finish(result, started)

    def _evaluate_isolated(self, evaluate: Evaluator, account: FollowerAccount) -> AccountOutcome:
        try:
            return evaluate(account)
        except AutomationError as e:
            logger.warning(f"Automation failed for {account.account_id}: {type(e).__name__}: {e}")
            return AccountOutcome(account.account_id, checked=True, error=f"{account.account_id}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected automation failure for {account.account_id}")
            return AccountOutcome(
                account.account_id, checked=True, error=f"{account.account_id}: {type(e).__name__}: {e}"
            )

    def _finish(self, result: RunResult, started: float) -> RunResult:
        result.duration_seconds = self._monotonic() - started
        logger.info(
            f"Automation run '{result.rule}': checked={result.checked} actions={result.actions} "
            f"skipped={result.skipped} errors={len(result.errors)} partial={result.partial}"
        )
        if self._audit is not None:
            self._audit.log_run(result.rule, result.to_dict())
        if self._metrics is not None:
            self._metrics.observe_run(RunStats(
                rule=result.rule,
                checked=result.checked,
                acted=result.acted,
                skipped=result.skipped,
                errors=len(result.errors),
                duration_seconds=result.duration_seconds,
                partial=result.partial,
            ))
        return result

    def _record_action(self, action: str, account: FollowerAccount, **details) -> None:
        if self._audit is not None:
            self._audit.log_action(action, account.user_id, account.account_id, details)

    # ---- telemetry with error accounting ----------------------------------

    def _fetch(self, account: FollowerAccount) -> Tuple[FollowerAccount, Optional[AccountStats], Optional[TelemetryError]]:
        """
        Fresh telemetry for one account.

        Failure increments the consecutive error counter; success resets it.
        Returns the account as stored after that bookkeeping.
        """
        now = self._clock()
        try:
            stats = self.telemetry.get_account_stats(
                account.account_id, account_age_days=account.account_age_days(now)
            )
        except TelemetryError as e:
            updated = self.store.record_error(account.account_id, f"{type(e).__name__}: {e}", now)
            return updated, None, e

        if account.consecutive_error_count != 0:
            account = self.store.update(account.account_id, {"consecutive_error_count": 0})
        return account, stats, None

    @staticmethod
    def _telemetry_error(account: FollowerAccount, error: TelemetryError) -> AccountOutcome:
        return AccountOutcome(
            account.account_id, checked=True, error=f"{account.account_id}: {type(error).__name__}: {error}"
        )

    # ---- rebalance ---------------------------------------------------------

    def _select_rebalance(self, account: FollowerAccount) -> Optional[str]:
        if not account.auto_rebalancing_enabled:
            return SKIP_DISABLED
        if account.is_auto_disconnected or account.status == AccountStatus.DISCONNECTED:
            return SKIP_TERMINAL
        if account.status != AccountStatus.ACTIVE:
            return SKIP_NOT_ACTIVE
        if account.rebalancing_rules is None:
            return SKIP_NOT_CONFIGURED
        if account.last_rebalanced_at is not None:
            interval = timedelta(hours=self.config.min_rebalance_interval_hours)
            if self._clock() - account.last_rebalanced_at < interval:
                return SKIP_TOO_SOON
        return None

    def _evaluate_rebalance(self, account: FollowerAccount) -> AccountOutcome:
        account, stats, error = self._fetch(account)
        if error is not None:
            return self._telemetry_error(account, error)

        now = self._clock()
        decision = decision_engine.should_rebalance(
            account, stats, now=now, min_interval_hours=self.config.min_rebalance_interval_hours
        )
        if not decision.should_rebalance:
            return AccountOutcome(account.account_id, checked=True)

        old = account.risk_multiplier
        new = decision.new_multiplier
        if self.gateway is not None:
            self.gateway.update_multiplier(account, new)

        self.store.update(account.account_id, {"risk_multiplier": new, "last_rebalanced_at": now})
        self.store.append_history(
            account.account_id,
            RebalancingHistoryEntry(timestamp=now, old_multiplier=old, new_multiplier=new, reason=decision.reason),
            limit=self.config.history_limit,
        )
        logger.info(f"Rebalanced {account.account_id}: {old} -> {new} ({decision.reason})")
        self._record_action(
            "rebalance", account,
            old_multiplier=old, new_multiplier=new, reason=decision.reason, trigger=decision.trigger,
        )
        return AccountOutcome(account.account_id, checked=True, action="rebalanced")

    def run_rebalance(self) -> RunResult:
        return self._execute(RULE_REBALANCE, self._select_rebalance, self._evaluate_rebalance)

    # ---- pause / resume ----------------------------------------------------

    @staticmethod
    def _select_risk_check(account: FollowerAccount) -> Optional[str]:
        if not (account.auto_pause_enabled or account.auto_resume_enabled):
            return SKIP_DISABLED
        if account.is_auto_disconnected or account.status == AccountStatus.DISCONNECTED:
            return SKIP_TERMINAL
        if account.is_auto_paused:
            return None if account.auto_resume_enabled else SKIP_DISABLED
        if account.status != AccountStatus.ACTIVE:
            return SKIP_NOT_ACTIVE
        return None if account.auto_pause_enabled else SKIP_DISABLED

    def _evaluate_risk_check(self, account: FollowerAccount) -> AccountOutcome:
        account, stats, error = self._fetch(account)
        if error is not None:
            return self._telemetry_error(account, error)

        now = self._clock()
        if account.is_auto_paused:
            decision = decision_engine.should_resume_copying(account, stats)
            if not decision.should_resume:
                return AccountOutcome(account.account_id, checked=True)
            if self.gateway is not None:
                self.gateway.resume(account)
            self.store.update(account.account_id, {
                "status": AccountStatus.ACTIVE,
                "auto_paused_at": None,
                "auto_pause_reason": None,
            })
            logger.info(f"Resumed copying for {account.account_id}: {decision.reason}")
            self._record_action("auto-resume", account, reason=decision.reason, drawdown=round(decision.drawdown, 4))
            return AccountOutcome(account.account_id, checked=True, action="resumed")

        decision = decision_engine.should_pause_copying(account, stats)
        if not decision.should_pause:
            return AccountOutcome(account.account_id, checked=True)
        if self.gateway is not None:
            self.gateway.pause(account)
        self.store.update(account.account_id, {
            "status": AccountStatus.PAUSED,
            "auto_paused_at": now,
            "auto_pause_reason": decision.reason,
        })
        logger.info(f"Paused copying for {account.account_id}: {decision.reason}")
        self._record_action("auto-pause", account, reason=decision.reason, drawdown=round(decision.drawdown, 4))
        return AccountOutcome(account.account_id, checked=True, action="paused")

    def run_risk_check(self) -> RunResult:
        return self._execute(RULE_RISK_CHECK, self._select_risk_check, self._evaluate_risk_check)

    # ---- auto-disconnect ---------------------------------------------------

    @staticmethod
    def _select_disconnect(account: FollowerAccount) -> Optional[str]:
        if not account.auto_disconnect_enabled:
            return SKIP_DISABLED
        if account.is_auto_disconnected or account.status == AccountStatus.DISCONNECTED:
            return SKIP_TERMINAL
        return None

    def _evaluate_disconnect(self, account: FollowerAccount) -> AccountOutcome:
        account, stats, error = self._fetch(account)
        if error is None:
            return AccountOutcome(account.account_id, checked=True)

        now = self._clock()
        message = f"{account.account_id}: {type(error).__name__}: {error}"
        if not decision_engine.should_disconnect(account, now):
            return AccountOutcome(account.account_id, checked=True, error=message)

        reason = decision_engine.disconnect_reason(account)
        if self.gateway is not None:
            try:
                self.gateway.remove_subscriber(account)
            except CopierError as e:
                # The account is still marked disconnected; the venue is cleaned up by hand
                logger.warning(f"Failed to remove subscriber {account.account_id} at venue: {e}")
        self.store.update(account.account_id, {
            "status": AccountStatus.DISCONNECTED,
            "auto_disconnected_at": now,
            "auto_disconnect_reason": reason,
            # Disconnect supersedes an automatic pause
            "auto_paused_at": None,
            "auto_pause_reason": None,
        })
        logger.warning(f"Auto-disconnected {account.account_id}: {reason}")
        self._record_action(
            "auto-disconnect", account,
            reason=reason, consecutive_errors=account.consecutive_error_count, last_error=account.last_error,
        )
        return AccountOutcome(account.account_id, checked=True, action="disconnected", error=message)

    def run_disconnect_check(self) -> RunResult:
        return self._execute(RULE_DISCONNECT_CHECK, self._select_disconnect, self._evaluate_disconnect)

    # ---- notifications -----------------------------------------------------

    def run_daily_summary(self, day: Optional[date] = None) -> RunResult:
        """Send yesterday's (UTC) summary to every account that asked for one."""
        day = day or (self._clock() - timedelta(days=1)).date()

        def select(account: FollowerAccount) -> Optional[str]:
            if not account.alerts.daily_summary_enabled:
                return SKIP_DISABLED
            if self.notifier is None:
                return SKIP_NO_NOTIFIER
            return None

        def evaluate(account: FollowerAccount) -> AccountOutcome:
            if not self.notifier.send_daily_summary(account.user_id, account.account_id, day):
                return AccountOutcome(
                    account.account_id, checked=True,
                    error=f"{account.account_id}: daily summary delivery failed",
                )
            self._record_action("daily-summary", account, date=day.isoformat())
            return AccountOutcome(account.account_id, checked=True, action="sent")

        return self._execute(RULE_DAILY_SUMMARY, select, evaluate)

    def process_closed_trade(self, trade: ClosedTrade, strategy_id: Optional[str] = None) -> RunResult:
        """
        Alert followers about a closed master trade.

        With `strategy_id`, every active follower of that strategy with trade
        alerts on is evaluated; without it only `trade.account_id` is.
        """
        def select(account: FollowerAccount) -> Optional[str]:
            if not account.alerts.trade_alerts_enabled:
                return SKIP_DISABLED
            if account.status != AccountStatus.ACTIVE:
                return SKIP_NOT_ACTIVE
            if self.notifier is None:
                return SKIP_NO_NOTIFIER
            return None

        def evaluate(account: FollowerAccount) -> AccountOutcome:
            follower_trade = replace(trade, account_id=account.account_id)
            decision = decision_engine.classify_trade_alert(account.alerts, follower_trade)
            if not decision.should_send:
                return AccountOutcome(account.account_id, checked=True)
            if not self.notifier.send_trade_alert(account.user_id, follower_trade, decision.alert_type, decision.reason):
                return AccountOutcome(
                    account.account_id, checked=True,
                    error=f"{account.account_id}: trade alert delivery failed",
                )
            self._record_action(
                "trade-alert", account,
                alert_type=decision.alert_type, reason=decision.reason, trade_id=trade.trade_id,
            )
            return AccountOutcome(account.account_id, checked=True, action="sent")

        accounts = None
        if self.enabled:
            try:
                if strategy_id:
                    accounts = [
                        a for a in self.store.list_automation_enabled() if a.strategy_id == strategy_id
                    ]
                else:
                    accounts = [self.store.get(trade.account_id)]
            except StoreError as e:
                result = RunResult(rule=RULE_TRADE_ALERT, errors=[f"{trade.account_id}: {e}"])
                return self._finish(result, self._monotonic())
        return self._execute(RULE_TRADE_ALERT, select, evaluate, accounts=accounts)

    # ---- read paths --------------------------------------------------------

    def risk_status(self, account_id: str) -> Dict[str, Any]:
        """Risk summary for one account, using the live view when it is fresh."""
        account = self.store.get(account_id)
        stats = self.telemetry.get_account_stats(
            account_id, account_age_days=account.account_age_days(self._clock()), prefer_live=True
        )
        return decision_engine.get_risk_status(account, stats)

    def run(self, rule: str, **kwargs) -> RunResult:
        runners = {
            RULE_REBALANCE: self.run_rebalance,
            RULE_RISK_CHECK: self.run_risk_check,
            RULE_DISCONNECT_CHECK: self.run_disconnect_check,
            RULE_DAILY_SUMMARY: self.run_daily_summary,
        }
        try:
            runner = runners[rule]
        except KeyError:
            raise ValueError(f"Unknown automation rule: {rule}") from None
        return runner(**kwargs)
