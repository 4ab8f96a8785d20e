"""
Tests for the webhook notification sink

Delivery, dry-run, dedupe and failure reporting through the boolean result.
"""

import json
import urllib.error
from datetime import date
from unittest.mock import MagicMock, patch

from core.models import ClosedTrade
from infra.notifications import NotificationConfig, WebhookNotificationSink
from tests.helpers import NOW

TRADE = ClosedTrade(account_id="acc-1", symbol="EURUSD", side="buy", volume=1.0, profit=-250.0,
                    trade_id="t-7", close_time=NOW)


def sink(**overrides):
    params = dict(enabled=True, webhook_url="https://hooks.test/notify", dry_run=False)
    params.update(overrides)
    return WebhookNotificationSink(NotificationConfig(**params))


def fake_response(status=200):
    response = MagicMock()
    response.status = status
    response.__enter__.return_value = response
    return response


def test_trade_alert_posts_json():
    with patch("infra.notifications.urllib.request.urlopen", return_value=fake_response()) as urlopen:
        assert sink().send_trade_alert("user-1", TRADE, "highLoss", "High loss trade: $-250.00 on EURUSD")

    request = urlopen.call_args.args[0]
    payload = json.loads(request.data.decode("utf-8"))
    assert request.full_url == "https://hooks.test/notify"
    assert payload["event"] == "trade_alert"
    assert payload["alert_type"] == "highLoss"
    assert payload["trade"]["trade_id"] == "t-7"
    assert payload["trade"]["close_time"] == NOW.isoformat()


def test_duplicate_is_reported_delivered_without_resending():
    notifier = sink()
    with patch("infra.notifications.urllib.request.urlopen", return_value=fake_response()) as urlopen:
        assert notifier.send_daily_summary("user-1", "acc-1", date(2026, 3, 1))
        assert notifier.send_daily_summary("user-1", "acc-1", date(2026, 3, 1))
        assert notifier.send_daily_summary("user-1", "acc-1", date(2026, 3, 2))
    assert urlopen.call_count == 2


def test_delivery_failure_returns_false():
    error = urllib.error.URLError("connection refused")
    with patch("infra.notifications.urllib.request.urlopen", side_effect=error):
        assert not sink().send_daily_summary("user-1", "acc-1", date(2026, 3, 1))


def test_failed_delivery_can_be_retried_immediately():
    notifier = sink()
    error = urllib.error.URLError("connection refused")
    with patch("infra.notifications.urllib.request.urlopen", side_effect=error):
        assert not notifier.send_daily_summary("user-1", "acc-1", date(2026, 3, 1))

    with patch("infra.notifications.urllib.request.urlopen", return_value=fake_response()) as urlopen:
        assert notifier.send_daily_summary("user-1", "acc-1", date(2026, 3, 1))
    urlopen.assert_called_once()


def test_http_error_status_returns_false():
    with patch("infra.notifications.urllib.request.urlopen", return_value=fake_response(500)):
        assert not sink().send_trade_alert("user-1", TRADE, "highLoss", "reason")


def test_enabled_without_url_is_disabled():
    notifier = sink(webhook_url=None)
    assert not notifier.is_enabled()
    assert not notifier.send_daily_summary("user-1", "acc-1", date(2026, 3, 1))


def test_from_config_reads_env(monkeypatch):
    monkeypatch.setenv("COPYTRADE_HOOK", "https://hooks.test/from-env")
    notifier = WebhookNotificationSink.from_config({"enabled": True, "webhook_env": "COPYTRADE_HOOK"})
    assert notifier.is_enabled()
    assert notifier._config.webhook_url == "https://hooks.test/from-env"


def test_from_config_expands_url(monkeypatch):
    monkeypatch.setenv("HOOK_HOST", "hooks.test")
    notifier = WebhookNotificationSink.from_config({"enabled": True, "webhook_url": "https://${HOOK_HOST}/x"})
    assert notifier._config.webhook_url == "https://hooks.test/x"
