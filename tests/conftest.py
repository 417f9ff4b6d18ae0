"""Pytest bootstrap configuration.

Pin environment-driven settings before test collection and module imports
that depend on application settings.
"""
import os

os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from infrastructure.cache import InMemoryCache
from infrastructure.repositories.memory_repository import InMemoryPaymentRepository


class FakeClock:
    """Manually advanced clock for window/TTL based tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> InMemoryCache:
    return InMemoryCache(clock=clock)


@pytest.fixture
def repository() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()
