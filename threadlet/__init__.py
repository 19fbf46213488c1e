"""
threadlet - Cooperative pseudo-threads for Python event loops.

Threadlets run generator-based computations one step at a time under a single
Scheduler, so many long-running tasks share one event loop without blocking
it. Each threadlet has a priority, a timeslice and a yield interval; the
scheduler keeps exactly one threadlet running and promotes queued work so that
higher priorities run more often without starving lower ones.

Example:
    >>> import asyncio
    >>> from threadlet import AsyncioHost, Scheduler, Threadlet
    >>>
    >>> def countdown(n):
    ...     while n > 0:
    ...         n = yield n - 1
    ...     return "done"
    >>>
    >>> async def main():
    ...     scheduler = Scheduler(AsyncioHost())
    ...     worker = Threadlet(scheduler, "countdown", {"priority": "high"})
    ...     return await worker.run(countdown, 3)
    >>>
    >>> asyncio.run(main())
    'done'
"""

# Hosts
from threadlet.hosts import (
    AsyncioHost,
    Host,
    SimTimer,
    SimulationHost,
    TimerHandle,
)

# Promises
from threadlet.promise import (
    AsyncPromise,
    Contract,
    LazyPromise,
    Promises,
    ProxyPromise,
    SealedContract,
    Settlement,
    default_catch_handler,
    gather,
    get_default_catch_handler,
    is_promisable,
    on_settlement,
    set_default_catch_handler,
)

# Computations
from threadlet.threadable import (
    Threadable,
    as_generator,
    bind_as_generator,
    drain,
    drive_inline,
    run_inline,
    threadable,
)

# Scheduling
from threadlet.controls import Priority, ThreadletControls
from threadlet.scheduler import Scheduler, SchedulerSnapshot
from threadlet.threadlet import Threadlet, ThreadletInterface, ThreadletState
from threadlet.events import (
    SchedulerEvent,
    ThreadletDeferred,
    ThreadletDemoted,
    ThreadletDetached,
    ThreadletDispatched,
    ThreadletEnded,
    ThreadletQueued,
    ThreadletRequeued,
    ThreadletWaiting,
)

# Synchronisation
from threadlet.semaphore import CriticalSection, Semaphore

# Workers
from threadlet.worker import StepArg, Worker, WorkerGroup, WorkerProcess, WorkerState

# Errors
from threadlet.errors import (
    PromisePendingError,
    SchedulerInvariantError,
    SchedulerShutdownError,
    SimulationHostError,
    ThreadableSuspendError,
    ThreadletError,
    WorkerClosedError,
)

__version__ = "0.1.0"

__all__ = [
    "AsyncPromise",
    "AsyncioHost",
    "Contract",
    "CriticalSection",
    "Host",
    "LazyPromise",
    "Priority",
    "PromisePendingError",
    "Promises",
    "ProxyPromise",
    "Scheduler",
    "SchedulerEvent",
    "SchedulerInvariantError",
    "SchedulerShutdownError",
    "SchedulerSnapshot",
    "SealedContract",
    "Semaphore",
    "Settlement",
    "StepArg",
    "SimTimer",
    "SimulationHost",
    "SimulationHostError",
    "ThreadableSuspendError",
    "Threadable",
    "Threadlet",
    "ThreadletControls",
    "ThreadletDeferred",
    "ThreadletDemoted",
    "ThreadletDetached",
    "ThreadletDispatched",
    "ThreadletEnded",
    "ThreadletError",
    "ThreadletInterface",
    "ThreadletQueued",
    "ThreadletRequeued",
    "ThreadletState",
    "ThreadletWaiting",
    "TimerHandle",
    "Worker",
    "WorkerClosedError",
    "WorkerGroup",
    "WorkerProcess",
    "WorkerState",
    "__version__",
    "as_generator",
    "bind_as_generator",
    "default_catch_handler",
    "drain",
    "drive_inline",
    "gather",
    "get_default_catch_handler",
    "is_promisable",
    "on_settlement",
    "run_inline",
    "set_default_catch_handler",
    "threadable",
]
