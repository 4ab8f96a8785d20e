"""
Pytest configuration and fixtures for copytrade-automation tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    # The deployment flag must never leak in from the developer's shell
    monkeypatch.delenv("ENABLE_AUTOMATION_FEATURES", raising=False)

    # CRITICAL: Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def store(tmp_path):
    from infra.account_store import JsonFileAccountStore
    return JsonFileAccountStore(str(tmp_path / "accounts.json"))
