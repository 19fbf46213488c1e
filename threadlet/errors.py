"""Exception types raised by the threadlet runtime."""

from __future__ import annotations

from typing import Any


class ThreadletError(Exception):
    """Base class for all threadlet runtime errors."""


class SchedulerShutdownError(ThreadletError):
    """Raised when work is submitted to, or abandoned by, a shut down scheduler."""

    def __init__(self, message: str = "Scheduler has been shut down") -> None:
        super().__init__(message)


class SchedulerInvariantError(ThreadletError):
    """Describes a scheduler bookkeeping defect.

    Never raised to callers. Instances are recorded on
    ``Scheduler.diagnostics`` and logged with a stack trace so that dispatching
    can continue.
    """

    def __init__(self, operation: str, message: str, threadlet_name: str | None = None) -> None:
        self.operation = operation
        self.threadlet_name = threadlet_name
        where = f" ({threadlet_name})" if threadlet_name else ""
        super().__init__(f"{operation}: {message}{where}")


class ThreadableSuspendError(ThreadletError):
    """Raised when a synchronously drained computation yields a future.

    Futures can only be waited on by a Threadlet or by the asyncio driver
    ``drive_inline``.
    """

    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__(
            f"Computation yielded {type(value).__name__} from a synchronous call.\n"
            "Hint: run it on a Threadlet or `await drive_inline(...)` instead"
        )


class PromisePendingError(ThreadletError):
    """Raised by ``unwrap()`` on a promise that has not settled yet."""


class SimulationHostError(ThreadletError):
    """Raised when a SimulationHost exceeds its callback budget."""


class WorkerClosedError(ThreadletError):
    """Raised when a task is added to a stopped worker or a closed group."""


__all__ = [
    "PromisePendingError",
    "SchedulerInvariantError",
    "SchedulerShutdownError",
    "SimulationHostError",
    "ThreadableSuspendError",
    "ThreadletError",
    "WorkerClosedError",
]
