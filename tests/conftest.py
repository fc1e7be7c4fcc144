"""
Shared fixtures for background job tests.

This module provides:
- An in-memory SQLite database and in-process cache
- A controllable clock
- A dispatcher that records calls instead of opening sockets
"""

from datetime import datetime, timedelta
from typing import Any, Optional

import pytest

from cache import MemoryCache
from config import Settings
from database import Base, make_engine, make_session_factory
from lifecycle import BackJob
from models import BackgroundJob  # noqa: F401  registers the table on Base
from store import JobStore


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingDispatcher:
    """Stands in for Dispatcher; records every call with the clock time it was made."""

    def __init__(self, clock: Optional[FakeClock] = None, error: Optional[Exception] = None):
        self.clock = clock
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def dispatch(self, request, job_id, origin, *, monitor, asynchronous, as_current_user=True):
        self.calls.append({
            "request": request,
            "job_id": job_id,
            "origin": origin,
            "monitor": monitor,
            "asynchronous": asynchronous,
            "as_current_user": as_current_user,
            "at": self.clock() if self.clock else None,
        })
        if self.error is not None:
            raise self.error
        return b""


@pytest.fixture
def settings() -> Settings:
    return Settings(
        secret_key="k",
        error_timeout=120,
        backlog_days=30,
        all_backlog_days=60,
        linger_seconds=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(settings, cache, session_factory, clock) -> JobStore:
    return JobStore(settings, cache=cache, session_factory=session_factory, clock=clock)


@pytest.fixture
def dispatcher(clock) -> RecordingDispatcher:
    return RecordingDispatcher(clock=clock)


@pytest.fixture
def backjob(settings, store, dispatcher, clock) -> BackJob:
    return BackJob(settings, store, dispatcher, clock=clock)
