"""Notification sink for trade alerts and daily summaries (webhook delivery)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from core.models import ClosedTrade

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """
    Human-facing delivery. Fire-and-forget from the automation core's point
    of view: implementations log their own failures and report delivery with
    the boolean return value; nothing is retried.
    """

    @abstractmethod
    def send_trade_alert(self, user_id: str, trade: ClosedTrade, alert_type: str, reason: str) -> bool:
        ...

    @abstractmethod
    def send_daily_summary(self, user_id: str, account_id: str, day: date) -> bool:
        ...


@dataclass
class NotificationConfig:
    enabled: bool
    webhook_url: Optional[str]
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Suppress identical notifications within 60s


class WebhookNotificationSink(NotificationSink):
    """
    Posts `{"text": ..., "event": ..., "user_id": ...}` JSON to a webhook.

    A notification identical (same fingerprint) to one delivered within
    `dedupe_seconds` is not sent again and reports as delivered, so an
    at-least-once scheduler cannot double-notify. Failed deliveries are not
    remembered and can be retried at once.
    """

    def __init__(self, config: NotificationConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Notifications enabled but no webhook URL set; disabling notifications")
        self._sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "WebhookNotificationSink":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "NOTIFICATION_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = NotificationConfig(
            enabled=bool(raw_config.get("enabled", True)),
            webhook_url=webhook_url or None,
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def send_trade_alert(self, user_id: str, trade: ClosedTrade, alert_type: str, reason: str) -> bool:
        title = f"Trade Alert: {alert_type}"
        payload = {
            "event": "trade_alert",
            "user_id": user_id,
            "account_id": trade.account_id,
            "alert_type": alert_type,
            "reason": reason,
            "trade": trade.to_dict(),
            "text": f"{title} | {reason}",
        }
        return self._deliver(f"trade|{user_id}|{trade.account_id}|{trade.trade_id}|{alert_type}", payload)

    def send_daily_summary(self, user_id: str, account_id: str, day: date) -> bool:
        payload = {
            "event": "daily_summary",
            "user_id": user_id,
            "account_id": account_id,
            "date": day.isoformat(),
            "text": f"Daily summary for account {account_id} ({day.isoformat()})",
        }
        return self._deliver(f"summary|{user_id}|{account_id}|{day.isoformat()}", payload)

    def _deliver(self, key: str, payload: Dict[str, Any]) -> bool:
        if not self._enabled:
            return False

        fingerprint = hashlib.sha256(key.encode("utf-8")).hexdigest()
        with self._lock:
            last = self._sent.get(fingerprint)
            if last is not None and time.monotonic() - last <= self._config.dedupe_seconds:
                # Already delivered within the window
                logger.debug(f"Notification deduped: {payload['text']} (fingerprint={fingerprint[:8]}...)")
                return True

        if self._config.dry_run:
            logger.info("[NOTIFY] %s", payload["text"])
        elif not self._post(payload):
            return False

        now = time.monotonic()
        with self._lock:
            self._sent[fingerprint] = now
            # Keep the dedupe table bounded
            self._sent = {fp: ts for fp, ts in self._sent.items() if now - ts <= max(300.0, self._config.dedupe_seconds)}
        return True

    def _post(self, payload: Dict[str, Any]) -> bool:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Notification webhook returned HTTP %s for '%s'", response.status, payload["text"])
                    return False
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver notification '%s': %s", payload["text"], exc)
            return False
        return True


__all__ = ["NotificationSink", "NotificationConfig", "WebhookNotificationSink"]
