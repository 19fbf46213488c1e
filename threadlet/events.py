"""Events the Scheduler reports to its observers.

Every decision the scheduler takes about a threadlet produces one event:

- ThreadletQueued: entered a priority queue (started or resumed)
- ThreadletDispatched: took the running slot
- ThreadletRequeued: yielded inside its timeslice, back on the run queue
- ThreadletDeferred: yielded inside its yield interval, parked on a timer
- ThreadletDemoted: yielded after its yield interval, back in its priority queue
- ThreadletWaiting: suspended on a future
- ThreadletDetached: paused, removed from scheduling
- ThreadletEnded: its task ended, failed or stopped
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SchedulerEvent:
    threadlet_id: int
    name: str
    time: float


@dataclass(frozen=True)
class ThreadletQueued(SchedulerEvent):
    priority: int


@dataclass(frozen=True)
class ThreadletDispatched(SchedulerEvent):
    dispatch: int


@dataclass(frozen=True)
class ThreadletRequeued(SchedulerEvent):
    work_time: float


@dataclass(frozen=True)
class ThreadletDeferred(SchedulerEvent):
    work_time: float
    delay: float


@dataclass(frozen=True)
class ThreadletDemoted(SchedulerEvent):
    work_time: float
    priority: int


@dataclass(frozen=True)
class ThreadletWaiting(SchedulerEvent):
    pass


@dataclass(frozen=True)
class ThreadletDetached(SchedulerEvent):
    pass


@dataclass(frozen=True)
class ThreadletEnded(SchedulerEvent):
    end_state: str


__all__ = [
    "SchedulerEvent",
    "ThreadletDeferred",
    "ThreadletDemoted",
    "ThreadletDetached",
    "ThreadletDispatched",
    "ThreadletEnded",
    "ThreadletQueued",
    "ThreadletRequeued",
    "ThreadletWaiting",
]
