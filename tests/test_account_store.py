"""
Tests for the JSON Account Store

Typed round trip, partial updates, bounded histories, legacy document
migration and failure mapping.
"""

import json
from datetime import timedelta

import pytest

from core.exceptions import AccountNotFound, StoreReadFailed, StoreWriteFailed
from core.models import AccountStatus, RebalancingHistoryEntry, RebalancingRules
from infra.account_store import JsonFileAccountStore
from tests.helpers import NOW, make_account, rebalancing_account


def test_put_and_get_preserves_typed_fields(store):
    store.put(rebalancing_account(
        rebalancing_rules=RebalancingRules(min_multiplier=0.5, max_multiplier=2.0, adjustment_step=0.25,
                                           drawdown_trigger_percent=12.0),
        auto_paused_at=NOW,
        status=AccountStatus.PAUSED,
    ))

    account = store.get("acc-1")

    assert account.status == AccountStatus.PAUSED
    assert account.auto_paused_at == NOW
    assert account.rebalancing_rules.adjustment_step == 0.25
    assert account.rebalancing_rules.drawdown_trigger_percent == 12.0
    assert account.rebalancing_rules.profit_trigger_percent is None


def test_missing_account(store):
    with pytest.raises(AccountNotFound):
        store.get("nope")
    with pytest.raises(AccountNotFound):
        store.update("nope", {"risk_multiplier": 2.0})


def test_missing_file_is_empty(store):
    assert store.list_all() == []


def test_list_automation_enabled_filters(store):
    store.put(make_account("idle"))
    store.put(make_account("watched", auto_disconnect_enabled=True))
    assert [a.account_id for a in store.list_automation_enabled()] == ["watched"]


def test_update_partial_fields(store):
    store.put(make_account())
    updated = store.update("acc-1", {"risk_multiplier": 1.7, "status": AccountStatus.PAUSED})

    assert updated.risk_multiplier == 1.7
    assert updated.updated_at is not None
    stored = store.get("acc-1")
    assert stored.status == AccountStatus.PAUSED
    assert stored.user_id == "user-acc-1"


def test_update_rejects_unknown_fields(store):
    store.put(make_account())
    with pytest.raises(ValueError):
        store.update("acc-1", {"riskMultiplier": 2.0})


def test_history_is_capped(store):
    store.put(rebalancing_account())
    for n in range(5):
        entry = RebalancingHistoryEntry(timestamp=NOW + timedelta(hours=n), old_multiplier=1.0,
                                        new_multiplier=1.0 + n / 10, reason=f"step {n}")
        store.append_history("acc-1", entry, limit=3)

    history = store.get("acc-1").rebalancing_history
    assert [h.reason for h in history] == ["step 2", "step 3", "step 4"]


def test_record_error_increments_and_bounds_history(store):
    store.put(make_account())
    for n in range(25):
        account = store.record_error("acc-1", f"failure {n}", NOW)

    assert account.consecutive_error_count == 25
    assert account.last_error == "failure 24"
    assert account.last_error_at == NOW
    assert len(account.error_history) == 20
    assert account.error_history[0]["message"] == "failure 5"


def test_record_error_starts_over_after_the_window(store):
    store.put(make_account(consecutive_error_count=4, error_window_minutes=60,
                           last_error_at=NOW - timedelta(minutes=61)))
    assert store.record_error("acc-1", "timeout", NOW).consecutive_error_count == 1

    store.update("acc-1", {"consecutive_error_count": 4, "last_error_at": NOW - timedelta(minutes=60)})
    assert store.record_error("acc-1", "timeout", NOW).consecutive_error_count == 5


def test_legacy_camel_case_document_is_migrated(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps({"accounts": {"legacy-1": {
        "userId": "u-9",
        "status": "ACTIVE",
        "riskMultiplier": 1.5,
        "autoPauseEnabled": True,
        "maxDrawdownPercent": 12,
        "rebalancingRules": {"minMultiplier": 0.5, "maxMultiplier": 3, "adjustmentStep": 0.5},
        "tradeAlertsEnabled": True,
        "alertTypes": ["highLoss"],
        "lastErrorAt": "2026-03-01T08:00:00Z",
    }}}))
    store = JsonFileAccountStore(str(path))

    account = store.get("legacy-1")

    assert account.user_id == "u-9"
    assert account.status == AccountStatus.ACTIVE
    assert account.risk_multiplier == 1.5
    assert account.original_risk_multiplier == 1.5
    assert account.auto_pause_enabled
    assert account.max_drawdown_percent == 12.0
    assert account.resume_drawdown_percent == 15.0
    assert account.rebalancing_rules.adjustment_step == 0.5
    assert account.alerts.trade_alerts_enabled
    assert account.alerts.alert_types == ["highLoss"]
    assert account.last_error_at.tzinfo is not None

    store.update("legacy-1", {"consecutive_error_count": 1})
    raw = json.loads(path.read_text())
    assert raw["schema_version"] == 1
    assert raw["accounts"]["legacy-1"]["schema_version"] == 1
    assert "userId" not in raw["accounts"]["legacy-1"]


def test_corrupt_file_maps_to_store_errors(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text("{not json")
    store = JsonFileAccountStore(str(path))

    with pytest.raises(StoreReadFailed):
        store.list_automation_enabled()
    with pytest.raises(StoreWriteFailed):
        store.update("acc-1", {"risk_multiplier": 2.0})


def test_writes_are_atomic(store, tmp_path):
    store.put(make_account())
    store.update("acc-1", {"risk_multiplier": 2.0})
    leftovers = [p.name for p in tmp_path.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []
