"""
Pytest configuration for threadlet tests.

Most tests run on a SimulationHost so that clock and callback order are
deterministic; ``host.run_until_idle()`` drives the scheduler to quiescence.
"""

from __future__ import annotations

from typing import Any

import pytest

from threadlet import Scheduler, SchedulerEvent, SimulationHost
from threadlet.promise import get_default_catch_handler, set_default_catch_handler


@pytest.fixture
def host() -> SimulationHost:
    return SimulationHost()


@pytest.fixture
def scheduler(host: SimulationHost):
    sched = Scheduler(host)
    yield sched
    sched.shutdown()


@pytest.fixture
def events(scheduler: Scheduler) -> list[SchedulerEvent]:
    """Every event the scheduler reports, in order."""
    recorded: list[SchedulerEvent] = []
    scheduler.add_observer(recorded.append)
    return recorded


@pytest.fixture
def unhandled():
    """Capture unhandled rejections instead of logging them."""
    captured: list[tuple[BaseException, Any]] = []
    previous = set_default_catch_handler(lambda error, owner: captured.append((error, owner)))
    yield captured
    set_default_catch_handler(previous)


@pytest.fixture(autouse=True)
def _restore_catch_handler():
    handler = get_default_catch_handler()
    yield
    set_default_catch_handler(handler)
