"""
Pytest configuration and fixtures for hivemind-trader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import FixedClock, FakeMarket, make_position, make_strategy


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def market():
    return FakeMarket()


@pytest.fixture
def strategy(clock):
    return make_strategy(now=clock.now())


@pytest.fixture
def position(clock):
    return make_position(opened_at=clock.now())
