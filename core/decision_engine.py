"""
Copy-trading automation: decision engine

Pure functions over (FollowerAccount, AccountStats). No I/O, no clocks except
the `now` the caller passes in, so every decision is reproducible: evaluating
an unchanged account twice yields the same answer. That property is what
makes the orchestrator safe under at-least-once, out-of-order invocation.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.exceptions import ConfigurationError
from core.models import (
    AccountStats,
    AccountStatus,
    AlertDecision,
    AlertPreferences,
    ClosedTrade,
    FollowerAccount,
    PauseDecision,
    RebalanceDecision,
    RebalancingRules,
    ResumeDecision,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_REBALANCE_INTERVAL_HOURS = 6.0

ALERT_HIGH_LOSS = "highLoss"
ALERT_HIGH_PROFIT = "highProfit"
ALERT_LARGE_TRADE = "largeTrade"

_PRECISION = 6


def _round_to_step(value: float, step: float) -> float:
    return round(round(value / step) * step, _PRECISION)


def _clamp(value: float, rules: RebalancingRules) -> float:
    return max(rules.min_multiplier, min(rules.max_multiplier, value))


def _check_rules(rules: RebalancingRules) -> None:
    if rules.adjustment_step <= 0:
        raise ConfigurationError(f"adjustment_step must be positive, got {rules.adjustment_step}")
    if rules.min_multiplier > rules.max_multiplier:
        raise ConfigurationError(
            f"min_multiplier {rules.min_multiplier} exceeds max_multiplier {rules.max_multiplier}"
        )


def drawdown_percent(stats: AccountStats) -> float:
    return stats.drawdown_percent


def profit_percent(stats: AccountStats) -> float:
    if not stats.balance or stats.balance <= 0:
        return 0.0
    return stats.profit_loss / stats.balance * 100.0


def prescribed_multiplier(stats: AccountStats, original_multiplier: float, rules: RebalancingRules) -> float:
    """
    Multiplier the performance rule prescribes, before step limiting.

    Scales the baseline by a factor built from equity ratio, drawdown, margin
    health and account age; rounds to the adjustment step and clamps. Changes
    smaller than max(0.1, 5% of baseline) collapse back to the baseline.
    """
    _check_rules(rules)

    equity_ratio = stats.equity_ratio
    drawdown = stats.drawdown_percent / 100.0

    factor = 1.0
    if equity_ratio < 0.9:
        factor = 0.9 - (0.9 - equity_ratio) * 0.5
    elif equity_ratio > 1.1:
        factor = 1.0 + (equity_ratio - 1.1) * 0.3

    if drawdown > 0.15:
        factor *= 0.8
    elif drawdown < 0.05 and equity_ratio > 1.0:
        factor *= 1.1

    # Without open positions the margin level carries no risk information
    if stats.has_exposure and stats.margin_level:
        if stats.margin_level < 200:
            factor *= 0.85
        elif stats.margin_level > 500 and equity_ratio > 1.0:
            factor *= 1.05

    if stats.account_age_days is not None and stats.account_age_days < 7:
        factor *= 0.95

    target = _clamp(_round_to_step(original_multiplier * factor, rules.adjustment_step), rules)

    min_change = max(0.1, original_multiplier * 0.05)
    if abs(target - original_multiplier) < min_change:
        target = _clamp(original_multiplier, rules)
    return round(target, _PRECISION)


def _step_towards(current: float, target: float, rules: RebalancingRules) -> float:
    step = rules.adjustment_step
    if target > current:
        moved = min(target, current + step)
    elif target < current:
        moved = max(target, current - step)
    else:
        moved = current
    return round(_clamp(moved, rules), _PRECISION)


def calculate_optimal_risk_multiplier(
    stats: AccountStats,
    original_multiplier: float,
    rules: RebalancingRules,
    current_multiplier: Optional[float] = None,
) -> float:
    """
    Next multiplier for an account, at most one adjustment step away from
    `current_multiplier` (the baseline when omitted), always inside
    [min_multiplier, max_multiplier].
    """
    target = prescribed_multiplier(stats, original_multiplier, rules)
    current = original_multiplier if current_multiplier is None else current_multiplier
    return _step_towards(current, target, rules)


def should_rebalance(
    account: FollowerAccount,
    stats: AccountStats,
    now: Optional[datetime] = None,
    min_interval_hours: float = DEFAULT_MIN_REBALANCE_INTERVAL_HOURS,
) -> RebalanceDecision:
    """
    Decide whether to move the account's multiplier. The loss and profit
    triggers take precedence over drift from the prescribed value.

    Drift fires when the multiplier is at least one full `adjustment_step`
    (`>=`) away from the prescribed target. Targets are rounded to the step,
    so a one-step gap is the smallest drift that can occur and it triggers.
    """
    if not account.auto_rebalancing_enabled:
        return RebalanceDecision(False, "Auto-rebalancing disabled")
    if account.is_auto_disconnected:
        return RebalanceDecision(False, "Account auto-disconnected")
    rules = account.rebalancing_rules
    if rules is None or not account.original_risk_multiplier:
        return RebalanceDecision(False, "Rebalancing not configured")

    now = now or utcnow()
    if account.last_rebalanced_at is not None:
        elapsed = now - account.last_rebalanced_at
        if elapsed < timedelta(hours=min_interval_hours):
            return RebalanceDecision(False, "Too soon since last rebalancing")

    current = account.risk_multiplier
    target = prescribed_multiplier(stats, account.original_risk_multiplier, rules)
    drawdown = stats.drawdown_percent
    profit = profit_percent(stats)
    summary = f"equity ratio {stats.equity_ratio * 100:.1f}%, drawdown {drawdown:.1f}%"

    # Most severe first: loss > profit > drift
    if rules.drawdown_trigger_percent is not None and drawdown >= rules.drawdown_trigger_percent:
        new = _step_towards(current, min(target, current - rules.adjustment_step), rules)
        if new < current:
            return RebalanceDecision(
                True,
                f"Loss trigger: drawdown {drawdown:.1f}% >= {rules.drawdown_trigger_percent}% - Reducing risk",
                new,
                "loss",
            )

    if (rules.profit_trigger_percent is not None and profit >= rules.profit_trigger_percent
            and target > current):
        new = _step_towards(current, target, rules)
        return RebalanceDecision(
            True,
            f"Profit trigger: profit {profit:.1f}% >= {rules.profit_trigger_percent}% - Increasing risk",
            new,
            "profit",
        )

    # Targets are step-rounded, so a full step is the smallest drift there is
    if abs(target - current) >= rules.adjustment_step - 1e-9:
        new = _step_towards(current, target, rules)
        if new != current:
            direction = "Reducing risk due to drawdown" if new < current else "Increasing risk due to good performance"
            return RebalanceDecision(True, f"Performance adjustment: {summary} - {direction}", new, "drift")

    return RebalanceDecision(False, "Multiplier within tolerance", current)


def should_pause_copying(account: FollowerAccount, stats: AccountStats) -> PauseDecision:
    drawdown = stats.drawdown_percent
    if not account.auto_pause_enabled:
        return PauseDecision(False, "Auto-pause disabled", drawdown)
    if account.is_auto_disconnected:
        return PauseDecision(False, "Account auto-disconnected", drawdown)
    if account.status != AccountStatus.ACTIVE:
        return PauseDecision(False, "Account is not active", drawdown)
    if account.is_auto_paused:
        return PauseDecision(False, "Already paused", drawdown)

    if drawdown > account.max_drawdown_percent:
        return PauseDecision(
            True,
            f"Drawdown {drawdown:.2f}% exceeds threshold of {account.max_drawdown_percent}%",
            drawdown,
        )
    return PauseDecision(False, None, drawdown)


def check_pause_resume_band(account: FollowerAccount) -> None:
    """Resume threshold must sit strictly below the pause threshold."""
    if account.resume_drawdown_percent >= account.max_drawdown_percent:
        raise ConfigurationError(
            f"resume_drawdown_percent {account.resume_drawdown_percent} must be below "
            f"max_drawdown_percent {account.max_drawdown_percent}"
        )


def should_resume_copying(account: FollowerAccount, stats: AccountStats) -> ResumeDecision:
    drawdown = stats.drawdown_percent
    if not account.auto_resume_enabled:
        return ResumeDecision(False, "Auto-resume disabled", drawdown)
    if account.is_auto_disconnected:
        return ResumeDecision(False, "Account auto-disconnected", drawdown)
    if not account.is_auto_paused:
        return ResumeDecision(False, "Account is not auto-paused", drawdown)
    if account.status == AccountStatus.ACTIVE:
        return ResumeDecision(False, "Account is already active", drawdown)

    check_pause_resume_band(account)

    if drawdown < account.resume_drawdown_percent:
        return ResumeDecision(
            True,
            f"Drawdown {drawdown:.2f}% is below resume threshold of {account.resume_drawdown_percent}%",
            drawdown,
        )
    return ResumeDecision(False, None, drawdown)


def should_disconnect(account: FollowerAccount, now: Optional[datetime] = None) -> bool:
    if not account.auto_disconnect_enabled:
        return False
    if account.is_auto_disconnected or account.status == AccountStatus.DISCONNECTED:
        return False
    if account.consecutive_error_count < account.max_consecutive_errors:
        return False
    if account.last_error_at is None:
        return True
    now = now or utcnow()
    return now - account.last_error_at <= timedelta(minutes=account.error_window_minutes)


def disconnect_reason(account: FollowerAccount) -> str:
    return (
        f"Exceeded error threshold: {account.consecutive_error_count} consecutive errors "
        f"within {account.error_window_minutes} minutes"
    )


def classify_trade_alert(preferences: AlertPreferences, trade: ClosedTrade) -> AlertDecision:
    """Pick the single most relevant alert: highLoss > highProfit > largeTrade."""
    if not preferences.trade_alerts_enabled:
        return AlertDecision(False, reason="Trade alerts disabled")
    types = set(preferences.alert_types or [])
    if not types:
        return AlertDecision(False, reason="No alert types configured")

    if trade.is_closed and trade.profit is not None:
        if ALERT_HIGH_LOSS in types and trade.profit <= preferences.min_loss_for_alert:
            return AlertDecision(
                True, ALERT_HIGH_LOSS, f"High loss trade: ${trade.profit:.2f} on {trade.symbol}"
            )
        if ALERT_HIGH_PROFIT in types and trade.profit >= preferences.min_profit_for_alert:
            return AlertDecision(
                True, ALERT_HIGH_PROFIT, f"High profit trade: ${trade.profit:.2f} on {trade.symbol}"
            )

    if ALERT_LARGE_TRADE in types and trade.volume >= preferences.min_trade_size_for_alert:
        return AlertDecision(
            True, ALERT_LARGE_TRADE, f"Large trade: {trade.volume} lots on {trade.symbol}"
        )

    return AlertDecision(False, reason="No alert criteria met")


def get_risk_status(account: FollowerAccount, stats: Optional[AccountStats] = None) -> Dict[str, Any]:
    current = stats.drawdown_percent if stats is not None else None
    can_resume = False
    if stats is not None and account.auto_resume_enabled and account.is_auto_paused:
        can_resume = current < account.resume_drawdown_percent
    return {
        "is_paused": account.status == AccountStatus.PAUSED,
        "is_auto_paused": account.is_auto_paused,
        "current_drawdown": current,
        "max_drawdown": account.max_drawdown_percent,
        "resume_drawdown": account.resume_drawdown_percent,
        "pause_reason": account.auto_pause_reason,
        "can_resume": can_resume,
    }
