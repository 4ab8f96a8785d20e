"""
Copy-trading automation: Telemetry Client

Point-in-time account metrics (balance, equity, margin, open positions) from
the trading venue's REST API. Every HTTP call carries its own timeout and
goes through the shared rate limiter.

Error mapping:
- timeout, connection error, 5xx, 429, malformed body -> TelemetryUnavailable
- any other 4xx (auth, permission, unknown account)   -> TelemetryRejected
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from core.exceptions import TelemetryError, TelemetryRejected, TelemetryUnavailable
from core.models import AccountStats, Position, utcnow
from core.retry import NO_RETRY, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://mt-client-api-v1.new-york.agiliumtrade.ai"


class TelemetryBackend(ABC):
    """Request/response access to one account's terminal state."""

    @abstractmethod
    def get_account_info(self, account_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_positions(self, account_id: str) -> List[Dict[str, Any]]:
        ...


class RestTelemetryBackend(TelemetryBackend):
    """MetaApi-style REST client (`auth-token` header)."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 10.0,
        rate_limiter: Optional[Any] = None,
        metrics: Optional[Any] = None,
    ):
        if not token:
            raise ValueError("Telemetry API token is required")
        self._token = token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._rate_limiter = rate_limiter
        self._metrics = metrics

    def _headers(self) -> Dict[str, str]:
        return {"auth-token": self._token, "Accept": "application/json"}

    def _get(self, endpoint: str, path: str) -> Any:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire("telemetry", endpoint=endpoint)

        url = f"{self.base_url}{path}"
        started = time.monotonic()
        status = "error"
        try:
            response = requests.request("GET", url, headers=self._headers(), timeout=self.timeout_seconds)
            status = str(response.status_code)
            response.raise_for_status()
            try:
                return response.json()
            except ValueError as e:
                raise TelemetryUnavailable(f"Malformed response from {endpoint}: {e}", e) from e

        except requests_exceptions.HTTPError as e:
            code = e.response.status_code if e.response is not None else 0
            if code == 429 or code >= 500:
                logger.warning(f"Telemetry {endpoint} unavailable: HTTP {code}")
                raise TelemetryUnavailable(f"{endpoint} returned HTTP {code}", e) from e
            logger.error(f"Telemetry {endpoint} rejected: HTTP {code} - {e.response.text if e.response is not None else ''}")
            raise TelemetryRejected(f"{endpoint} returned HTTP {code}", e, status_code=code) from e

        except requests_exceptions.Timeout as e:
            status = "timeout"
            logger.warning(f"Telemetry {endpoint} timed out after {self.timeout_seconds}s")
            raise TelemetryUnavailable(f"{endpoint} timed out", e) from e

        except requests_exceptions.RequestException as e:
            status = "network"
            logger.warning(f"Network error on telemetry {endpoint}: {e}")
            raise TelemetryUnavailable(f"{endpoint} network error: {e}", e) from e

        finally:
            if self._metrics is not None:
                self._metrics.record_telemetry_call(endpoint, time.monotonic() - started, status)

    def get_account_info(self, account_id: str) -> Dict[str, Any]:
        data = self._get("account-information", f"/users/current/accounts/{account_id}/account-information")
        if not isinstance(data, dict):
            raise TelemetryUnavailable("account-information returned a non-object body")
        return data

    def get_positions(self, account_id: str) -> List[Dict[str, Any]]:
        data = self._get("positions", f"/users/current/accounts/{account_id}/positions")
        if not isinstance(data, list):
            raise TelemetryUnavailable("positions returned a non-list body")
        return data


def stats_from_payload(
    account_id: str,
    info: Dict[str, Any],
    positions: List[Dict[str, Any]],
    fetched_at: datetime,
    account_age_days: Optional[int] = None,
    source: str = "rest",
) -> AccountStats:
    """Build AccountStats from an account-information payload."""
    try:
        balance = float(info["balance"])
        equity = float(info["equity"])
    except (KeyError, TypeError, ValueError) as e:
        raise TelemetryUnavailable(f"Incomplete account information for {account_id}: {e}", e) from e

    margin_level = info.get("marginLevel")
    return AccountStats(
        account_id=account_id,
        balance=balance,
        equity=equity,
        margin=float(info.get("margin") or 0.0),
        free_margin=float(info.get("freeMargin") or 0.0),
        margin_level=float(margin_level) if margin_level is not None else None,
        open_positions=len(positions),
        account_age_days=account_age_days,
        fetched_at=fetched_at,
        source=source,
    )


class TelemetryClient:
    """
    Fetches AccountStats for one account.

    `live_view` is optional; when given it must offer
    `cached_account_stats(account_id, max_age_seconds)` and
    `cached_positions(account_id, max_age_seconds)` returning None when the
    live view is stale or belongs to another account. Only read-only callers
    opt into it (`prefer_live=True`); automation always fetches fresh.
    """

    def __init__(
        self,
        backend: TelemetryBackend,
        retry_policy: RetryPolicy = NO_RETRY,
        live_view: Optional[Any] = None,
        cache_ttl_seconds: float = 30.0,
        metrics: Optional[Any] = None,
        sleep=time.sleep,
    ):
        self.backend = backend
        self.retry_policy = retry_policy
        self.live_view = live_view
        self.cache_ttl_seconds = cache_ttl_seconds
        self._metrics = metrics
        self._sleep = sleep

    def _record_error(self, error: Exception) -> None:
        if self._metrics is None:
            return
        kind = "rejected" if isinstance(error, TelemetryRejected) else "unavailable"
        self._metrics.record_telemetry_error(kind)

    def _fetch(self, account_id: str, account_age_days: Optional[int]) -> AccountStats:
        info = self.backend.get_account_info(account_id)
        positions = self.backend.get_positions(account_id)
        return stats_from_payload(account_id, info, positions, utcnow(), account_age_days)

    def get_account_stats(
        self,
        account_id: str,
        account_age_days: Optional[int] = None,
        prefer_live: bool = False,
    ) -> AccountStats:
        if prefer_live and self.live_view is not None:
            cached = self.live_view.cached_account_stats(account_id, self.cache_ttl_seconds)
            if cached is not None:
                logger.debug(f"Serving telemetry for {account_id} from live view")
                return cached

        result = call_with_retry(
            lambda: self._fetch(account_id, account_age_days),
            self.retry_policy,
            retry_on=(TelemetryUnavailable,),
            sleep=self._sleep,
            label=f"telemetry fetch for {account_id}",
        )
        if not result.ok:
            error = result.error
            if not isinstance(error, TelemetryError):
                error = TelemetryUnavailable(f"Unexpected telemetry failure for {account_id}: {error}", error)
            self._record_error(error)
            raise error
        return result.value

    def get_positions(self, account_id: str, prefer_live: bool = True) -> List[Position]:
        if prefer_live and self.live_view is not None:
            cached = self.live_view.cached_positions(account_id, self.cache_ttl_seconds)
            if cached is not None:
                return cached

        result = call_with_retry(
            lambda: self.backend.get_positions(account_id),
            self.retry_policy,
            retry_on=(TelemetryUnavailable,),
            sleep=self._sleep,
            label=f"positions fetch for {account_id}",
        )
        if not result.ok:
            error = result.error
            if not isinstance(error, TelemetryError):
                error = TelemetryUnavailable(f"Unexpected telemetry failure for {account_id}: {error}", error)
            self._record_error(error)
            raise error
        return [Position.from_payload(p) for p in result.value]
