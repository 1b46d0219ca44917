"""Pytest configuration: a plugin-less asyncio runner and shared fixtures.

Async tests are marked with ``@pytest.mark.asyncio``. When pytest-asyncio is
not installed, ``pytest_pyfunc_call`` below runs them on a fresh event loop.
Fixtures stay synchronous so they work under either runner.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from config.settings import Settings
from src.store.memory import MemoryStore


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` coroutine tests via a private event loop."""
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture()
def clock() -> FakeClock:
    """Starts at the real current second, since signed tokens carry wall-clock timestamps."""
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture()
def fixed_clock() -> FakeClock:
    """Starts mid-January 2026, for calendar arithmetic."""
    return FakeClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="dev",
        sso_token_secret="test-secret-0123456789abcdef",
        cron_secret="cron-secret",
        frontend_url="http://billing.test",
    )
