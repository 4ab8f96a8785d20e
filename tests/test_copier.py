"""
Tests for the CopyFactory subscription gateway

Request shapes, retry on transient venue errors, no retry on rejections.
"""

from unittest.mock import Mock, patch

import pytest
from requests.exceptions import HTTPError

from core.copier import CopyFactoryGateway
from core.exceptions import CopierError, CopierUnavailable
from core.retry import RetryPolicy
from tests.helpers import make_account


def response(status_code=200, payload=None):
    resp = Mock()
    resp.status_code = status_code
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = HTTPError(f"HTTP {status_code}", response=resp)
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def gateway():
    return CopyFactoryGateway("copy-token", base_url="https://copy.test",
                              retry_policy=RetryPolicy(max_attempts=3), sleep=lambda _: None)


def test_update_multiplier_puts_subscription(gateway):
    account = make_account(label="Main follower", reverse_trading=True, max_risk_percent=2.0)
    with patch("core.copier.requests.request", return_value=response()) as request:
        gateway.update_multiplier(account, 0.8)

    method, url = request.call_args.args
    body = request.call_args.kwargs["json"]
    assert method == "PUT"
    assert url == "https://copy.test/users/current/configuration/subscribers/acc-1"
    assert request.call_args.kwargs["headers"]["auth-token"] == "copy-token"
    assert body == {
        "name": "Main follower",
        "subscriptions": [{"strategyId": "strat-1", "multiplier": 0.8, "reverse": True, "maxTradeRisk": 2.0}],
    }


def test_pause_keeps_other_strategies(gateway):
    current = {"subscriptions": [{"strategyId": "strat-1", "multiplier": 1.0},
                                 {"strategyId": "strat-2", "multiplier": 0.5}]}
    with patch("core.copier.requests.request", side_effect=[response(payload=current), response()]) as request:
        gateway.pause(make_account())

    assert request.call_args_list[0].args[0] == "GET"
    assert request.call_args_list[1].kwargs["json"]["subscriptions"] == [{"strategyId": "strat-2", "multiplier": 0.5}]


def test_resume_uses_current_multiplier(gateway):
    with patch("core.copier.requests.request", return_value=response()) as request:
        gateway.resume(make_account(risk_multiplier=1.3))
    assert request.call_args.kwargs["json"]["subscriptions"][0]["multiplier"] == 1.3


def test_remove_subscriber(gateway):
    with patch("core.copier.requests.request", return_value=response()) as request:
        gateway.remove_subscriber(make_account())
    assert request.call_args.args[0] == "DELETE"


def test_transient_errors_are_retried(gateway):
    with patch("core.copier.requests.request", return_value=response(503)) as request:
        with pytest.raises(CopierUnavailable):
            gateway.remove_subscriber(make_account())
    assert request.call_count == 3


def test_rejections_are_not_retried(gateway):
    with patch("core.copier.requests.request", return_value=response(404)) as request:
        with pytest.raises(CopierError) as exc_info:
            gateway.remove_subscriber(make_account())
    assert not isinstance(exc_info.value, CopierUnavailable)
    assert request.call_count == 1


def test_missing_strategy_is_an_error(gateway):
    with pytest.raises(CopierError):
        gateway.update_multiplier(make_account(strategy_id=None), 1.0)
