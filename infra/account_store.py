"""
Copy-trading automation: Account Store

Durable per-account configuration and history, kept as one JSON document
file with atomic writes (temp file + rename). Every mutation is a single
document read-modify-write under a process lock; there are no cross-document
transactions. Defaults and legacy-document migration happen in
`FollowerAccount.from_document`, so callers only ever see typed records.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import AccountNotFound, StoreReadFailed, StoreWriteFailed
from core.models import (
    MAX_ERROR_HISTORY,
    SCHEMA_VERSION,
    FollowerAccount,
    RebalancingHistoryEntry,
    format_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50

_ACCOUNT_FIELDS = {f.name for f in fields(FollowerAccount)}


class AccountStore(ABC):
    """Operations the automation core needs from the document store."""

    @abstractmethod
    def get(self, account_id: str) -> FollowerAccount:
        ...

    @abstractmethod
    def list_automation_enabled(self) -> List[FollowerAccount]:
        ...

    @abstractmethod
    def update(self, account_id: str, changes: Dict[str, Any]) -> FollowerAccount:
        ...

    @abstractmethod
    def append_history(self, account_id: str, entry: RebalancingHistoryEntry,
                       limit: int = DEFAULT_HISTORY_LIMIT) -> FollowerAccount:
        ...

    @abstractmethod
    def record_error(self, account_id: str, message: str, at: datetime) -> FollowerAccount:
        ...


class JsonFileAccountStore(AccountStore):
    """
    Account documents in a single JSON file.

    File layout: {"schema_version": 1, "accounts": {account_id: document}}
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or os.getenv("ACCOUNT_STORE_FILE", "data/accounts.json"))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        logger.info(f"Initialized JsonFileAccountStore at {self.path}")

    # ---- raw document access ----------------------------------------------

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreReadFailed(f"Failed to read account store {self.path}: {e}", e) from e

        if not isinstance(data, dict):
            raise StoreReadFailed(f"Invalid account store format in {self.path}")
        accounts = data.get("accounts", {})
        if not isinstance(accounts, dict):
            raise StoreReadFailed(f"Invalid 'accounts' section in {self.path}")
        return accounts

    def _save(self, accounts: Dict[str, Dict[str, Any]]) -> None:
        payload = {"schema_version": SCHEMA_VERSION, "accounts": accounts}
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=".accounts_", suffix=".json.tmp"
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreWriteFailed(f"Failed to write account store {self.path}: {e}", e) from e

    def _mutate(self, account_id: str, fn) -> FollowerAccount:
        with self._lock:
            try:
                accounts = self._load()
            except StoreReadFailed as e:
                raise StoreWriteFailed(str(e), e.original) from e
            doc = accounts.get(account_id)
            if doc is None:
                raise AccountNotFound(f"Account {account_id} not found")
            account = fn(FollowerAccount.from_document({**doc, "account_id": account_id}))
            account = replace(account, updated_at=utcnow())
            accounts[account_id] = account.to_document()
            self._save(accounts)
            return account

    # ---- AccountStore -----------------------------------------------------

    def get(self, account_id: str) -> FollowerAccount:
        with self._lock:
            doc = self._load().get(account_id)
        if doc is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return FollowerAccount.from_document({**doc, "account_id": account_id})

    def list_all(self) -> List[FollowerAccount]:
        with self._lock:
            accounts = self._load()
        return [
            FollowerAccount.from_document({**doc, "account_id": account_id})
            for account_id, doc in accounts.items()
        ]

    def list_automation_enabled(self) -> List[FollowerAccount]:
        return [account for account in self.list_all() if account.automation_enabled]

    def put(self, account: FollowerAccount) -> None:
        """Create or replace a whole account document."""
        with self._lock:
            try:
                accounts = self._load()
            except StoreReadFailed as e:
                raise StoreWriteFailed(str(e), e.original) from e
            accounts[account.account_id] = account.to_document()
            self._save(accounts)

    def update(self, account_id: str, changes: Dict[str, Any]) -> FollowerAccount:
        """Apply a partial update of typed fields; unknown field names are rejected."""
        unknown = set(changes) - _ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        return self._mutate(account_id, lambda account: replace(account, **changes))

    def append_history(self, account_id: str, entry: RebalancingHistoryEntry,
                       limit: int = DEFAULT_HISTORY_LIMIT) -> FollowerAccount:
        def _append(account: FollowerAccount) -> FollowerAccount:
            history = (account.rebalancing_history + [entry])[-limit:]
            return replace(account, rebalancing_history=history)

        return self._mutate(account_id, _append)

    def record_error(self, account_id: str, message: str, at: datetime) -> FollowerAccount:
        """
        Count one telemetry error and keep a bounded error history.

        The counter starts over when the previous error is older than the
        account's error window, so only errors inside one window add up.
        """
        def _record(account: FollowerAccount) -> FollowerAccount:
            count = account.consecutive_error_count
            window = timedelta(minutes=account.error_window_minutes)
            if account.last_error_at is not None and at - account.last_error_at > window:
                count = 0
            history = (account.error_history + [{
                "timestamp": format_timestamp(at),
                "message": message,
            }])[-MAX_ERROR_HISTORY:]
            return replace(
                account,
                consecutive_error_count=count + 1,
                last_error_at=at,
                last_error=message,
                error_history=history,
            )

        return self._mutate(account_id, _record)
