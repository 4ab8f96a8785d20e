"""
Copy-trading automation: subscription gateway

Reflects automation actions at the copy-trading venue: a rebalance changes
the subscription multiplier, a pause drops the subscription, a resume
re-creates it, an auto-disconnect removes the subscriber configuration.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests
from requests import exceptions as requests_exceptions

from core.exceptions import CopierError, CopierUnavailable
from core.models import FollowerAccount
from core.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://copyfactory-api-v1.new-york.agiliumtrade.ai"


class SubscriptionGateway(ABC):

    @abstractmethod
    def update_multiplier(self, account: FollowerAccount, multiplier: float) -> None:
        ...

    @abstractmethod
    def pause(self, account: FollowerAccount) -> None:
        ...

    @abstractmethod
    def resume(self, account: FollowerAccount) -> None:
        ...

    @abstractmethod
    def remove_subscriber(self, account: FollowerAccount) -> None:
        ...


class CopyFactoryGateway(SubscriptionGateway):
    """Subscriber configuration over the CopyFactory REST API."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[Any] = None,
        sleep=None,
    ):
        if not token:
            raise ValueError("CopyFactory API token is required")
        self._token = token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
        self._rate_limiter = rate_limiter
        self._sleep = sleep

    def _subscriber_path(self, account_id: str) -> str:
        return f"/users/current/configuration/subscribers/{account_id}"

    def _send(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire("copier", endpoint=path.rsplit("/", 2)[-2])
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers={"auth-token": self._token, "Content-Type": "application/json"},
                json=body,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests_exceptions.HTTPError as e:
            code = e.response.status_code if e.response is not None else 0
            if code == 429 or code >= 500:
                raise CopierUnavailable(f"{method} {path} returned HTTP {code}", e) from e
            raise CopierError(f"{method} {path} returned HTTP {code}", e) from e
        except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
            raise CopierUnavailable(f"{method} {path} failed: {e}", e) from e
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        result = call_with_retry(
            lambda: self._send(method, path, body),
            self.retry_policy,
            retry_on=(CopierUnavailable,),
            label=f"CopyFactory {method} {path}",
            **kwargs,
        )
        if not result.ok:
            error = result.error
            if not isinstance(error, CopierError):
                error = CopierError(f"CopyFactory {method} {path} failed: {error}", error)
            raise error
        return result.value

    @staticmethod
    def _subscription(account: FollowerAccount, multiplier: float) -> Dict[str, Any]:
        if not account.strategy_id:
            raise CopierError(f"Account {account.account_id} has no strategy id")
        subscription: Dict[str, Any] = {"strategyId": account.strategy_id, "multiplier": multiplier}
        if account.reverse_trading:
            subscription["reverse"] = True
        if account.max_risk_percent is not None:
            subscription["maxTradeRisk"] = account.max_risk_percent
        return subscription

    def _put_subscriptions(self, account: FollowerAccount, subscriptions) -> None:
        self._call(
            "PUT",
            self._subscriber_path(account.account_id),
            {"name": account.label or account.account_id, "subscriptions": subscriptions},
        )

    def update_multiplier(self, account: FollowerAccount, multiplier: float) -> None:
        logger.info(f"CopyFactory: setting multiplier {multiplier} for {account.account_id}")
        self._put_subscriptions(account, [self._subscription(account, multiplier)])

    def resume(self, account: FollowerAccount) -> None:
        logger.info(f"CopyFactory: re-subscribing {account.account_id} to {account.strategy_id}")
        self._put_subscriptions(account, [self._subscription(account, account.risk_multiplier)])

    def pause(self, account: FollowerAccount) -> None:
        logger.info(f"CopyFactory: unsubscribing {account.account_id} from {account.strategy_id}")
        subscriber = self._call("GET", self._subscriber_path(account.account_id)) or {}
        remaining = [
            sub for sub in subscriber.get("subscriptions", [])
            if sub.get("strategyId") != account.strategy_id
        ]
        self._put_subscriptions(account, remaining)

    def remove_subscriber(self, account: FollowerAccount) -> None:
        logger.info(f"CopyFactory: removing subscriber {account.account_id}")
        self._call("DELETE", self._subscriber_path(account.account_id))
