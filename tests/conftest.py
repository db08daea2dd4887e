"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                         # Run all tests
    pytest tests/test_store.py -v         # Run specific test file

Everything runs in-process: the backend is faked with httpx.MockTransport
and the clock is a manual one, so no test touches the network or sleeps.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest

from keystone.core.models import ProjectDraft, ProjectStatus
from keystone.core.store import EntityStore
from keystone.infra.circuit_breaker import CircuitBreaker
from keystone.integrations.api_client import KeystoneApiClient

BASE_URL = "http://keystone.test"
START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> None:
        self.now += timedelta(seconds=seconds)

    def rewind(self, seconds: float = 1.0) -> None:
        self.now -= timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock: ManualClock) -> EntityStore:
    return EntityStore(clock=clock, current_user="pm@test.local", feed_limit=50)


@pytest.fixture
def project(store: EntityStore):
    return store.create_project(ProjectDraft(
        name="Apollo",
        description="Customer portal rebuild",
        status=ProjectStatus.IN_PROGRESS,
    ))


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_client() -> Callable[..., KeystoneApiClient]:
    """Build an API client whose requests go to ``handler`` instead of the network."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        *,
        retry_attempts: int = 3,
        breaker: CircuitBreaker | None = None,
        token: str = "test-token",
    ) -> KeystoneApiClient:
        return KeystoneApiClient(
            BASE_URL,
            token,
            prefix="/api/v1",
            retry_attempts=retry_attempts,
            backoff_max_s=0,
            breaker=breaker or CircuitBreaker("test_api", failure_threshold=100),
            transport=httpx.MockTransport(handler),
        )

    return _make
