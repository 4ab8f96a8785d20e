"""Test helpers for the copytrade-automation test suite"""

from tests.helpers.fakes import (
    NOW,
    FakeGateway,
    FakeNotifier,
    FakeTelemetry,
    MutableClock,
    ScriptedStreamSource,
    SourceFactory,
    failing_gateway,
    make_account,
    make_stats,
    rebalancing_account,
)

__all__ = [
    "NOW",
    "FakeGateway",
    "FakeNotifier",
    "FakeTelemetry",
    "MutableClock",
    "ScriptedStreamSource",
    "SourceFactory",
    "failing_gateway",
    "make_account",
    "make_stats",
    "rebalancing_account",
]
