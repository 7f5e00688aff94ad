"""
Pytest configuration and fixtures for Tracker Request Orchestrator tests.
"""

import asyncio

import pytest

from tracker_orchestrator.config import RateLimitConfig, Settings, SmartPollingConfig


class FakeClock:
    """
    Simulated time source.

    ``sleep`` yields to the event loop, advances simulated time by the
    requested amount and yields again, so timing-dependent code runs
    instantly and deterministically.
    """

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        if seconds > 0:
            self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    """Simulated clock."""
    return FakeClock()


@pytest.fixture
def fast_config() -> RateLimitConfig:
    """Request manager config without spacing or jitter."""
    return RateLimitConfig(
        min_delay_between_requests=0.0,
        max_requests_per_minute=1000,
        max_concurrent_requests=1,
        max_jitter=0.0,
    )


@pytest.fixture
def polling_config() -> SmartPollingConfig:
    """Smart polling config with default intervals."""
    return SmartPollingConfig()


@pytest.fixture
def test_settings() -> Settings:
    """Settings for testing."""
    return Settings(
        vendor_base_url="https://vendor.test/openapi",
        vendor_token="test-token",
        coordinator_url="http://coordinator.test/coordinator",
        control_store="memory",
        debug=True,
        log_level="DEBUG",
        log_format="console",
    )


def success_work(value):
    """Build an async thunk returning ``value``."""

    async def work():
        return value

    return work


def failing_work(error: Exception):
    """Build an async thunk raising ``error``."""

    async def work():
        raise error

    return work
