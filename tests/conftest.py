"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from ingest.lib.circuit_breaker import CircuitBreakerRegistry
from ingest.lib.failed_jobs import MemoryFailedJobStore
from ingest.lib.resilience import ResilienceLayer


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeWallClock:
    """Settable UTC datetime source for failed-job scheduling."""

    def __init__(self) -> None:
        self.current = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def job_store(wall_clock: FakeWallClock) -> MemoryFailedJobStore:
    return MemoryFailedJobStore(now=wall_clock)


@pytest.fixture
def breakers(clock: FakeClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(clock=clock)


@pytest.fixture
def resilience(job_store, breakers, clock) -> ResilienceLayer:
    return ResilienceLayer(job_store, breakers=breakers, sleep=clock.sleep)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the real environment and state directory."""
    monkeypatch.delenv("FMP_API_KEY", raising=False)
    monkeypatch.delenv("INGEST_SINK_DSN", raising=False)
    monkeypatch.setenv("INGEST_STATE_DIR", str(tmp_path / "state"))
