"""
Pytest configuration and fixtures for Escapement tests.
"""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from escapement.forge import LockManager, StateStore
from escapement.providers import InMemoryProvider, ProviderRegistry


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def provider():
    """In-memory adapter shared by every test resource type."""
    return InMemoryProvider()


@pytest.fixture
def registry(provider):
    """Registry with the resource types used throughout the tests.

    - network: replaced when ``cidr`` changes
    - subnet: replaced when it moves to another network
    - gateway: replaced create-before-destroy when ``zone`` changes
    """
    return (
        ProviderRegistry()
        .register("network", provider, force_replace=["cidr"])
        .register("subnet", provider, force_replace=["vpc_id"])
        .register("gateway", provider, force_replace=["zone"], create_before_destroy=True)
    )


@pytest.fixture
def store():
    """State Store kept in memory."""
    return StateStore(None)


class FakeClock:
    """Manually advanced clock for lock staleness tests."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lock(clock):
    """In-process lock with a 10 second staleness window."""
    return LockManager(None, stale_after=10.0, clock=clock)
