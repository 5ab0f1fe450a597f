"""Shared test fixtures."""

from __future__ import annotations

import pytest

from utils.cache import CacheConfig, FreshnessCache


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> FreshnessCache:
    return FreshnessCache(CacheConfig(max_age=300, fallback_max_age=86_400), clock=clock)
