"""Cooperative scheduler arbitrating which threadlet runs next.

The scheduler owns a run queue and one queue per priority. Exactly one
threadlet occupies the running slot at a time; its step is executed from a
host callback and, when it yields, the work time since dispatch decides where
it goes next:

- ``w < timeslice``: straight back onto the run queue.
- ``w < yield_interval``: parked on a host timer for the remainder of the
  interval, then back into its priority queue.
- otherwise: back into its priority queue, behind fresher work.

When the run queue is empty the head of the highest non-empty priority queue
moves onto it. Each queue below that one, down to the level named by a
promotion cycle rotating HIGH, DEFAULT, LOW, also moves its head up one level.
Threadlets that are always ready at HIGH, DEFAULT and LOW are dispatched in
the ratio 3:2:1, and LOW work is never starved.

Bookkeeping defects are logged with a stack trace and recorded in
``Scheduler.diagnostics``; they never raise into the caller.

Example:
    host = SimulationHost()
    with Scheduler(host) as scheduler:
        promise = Threadlet(scheduler, "worker").run(compute, 10)
        host.run_until_idle()
        assert promise.unwrap() == 55
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from frozendict import frozendict

from threadlet._validators import ensure_callable, ensure_number
from threadlet.controls import Priority, ThreadletControls
from threadlet.errors import SchedulerInvariantError, SchedulerShutdownError
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
from threadlet.hosts import Host, TimerHandle
from threadlet.promise import LazyPromise

if TYPE_CHECKING:
    from threadlet.threadlet import Threadlet, ThreadletInterface

logger = logging.getLogger(__name__)

RUN_QUEUE = 0

SchedulerObserver = Callable[[SchedulerEvent], Any]


class SlotStatus(Enum):
    DETACHED = auto()
    QUEUED = auto()
    RUNNING = auto()
    DEFERRED = auto()


@dataclass
class SchedulingSlot:
    """Scheduler bookkeeping carried by each threadlet."""

    status: SlotStatus = SlotStatus.DETACHED
    queue_id: int | None = None
    work_start: float | None = None
    work_timer: float = 0.0
    timer: TimerHandle | None = None


@dataclass(frozen=True)
class SchedulerSnapshot:
    running: str | None
    n_threads: int
    queue_depths: frozendict[int, int]
    deferred: int
    dispatches: int
    closed: bool


class Scheduler:
    """Dispatches threadlets one at a time on a host event loop."""

    def __init__(
        self,
        host: Host,
        default_controls: ThreadletControls | Mapping[str, Any] | None = None,
    ) -> None:
        if not isinstance(host, Host):
            raise TypeError(f"host must implement Host, got {type(host).__name__}")
        self._host = host
        self._default_controls = ThreadletControls.from_value(default_controls)
        self._queues: list[deque[Threadlet]] = [deque() for _ in range(Priority.LOW + 1)]
        self._n_threads = 0
        self._running: Threadlet | None = None
        self._stepping: Threadlet | None = None
        self._deferred: dict[int, Threadlet] = {}
        self._dispatch_seq = 0
        self._cycle = int(Priority.HIGH)
        self._closed = False
        self._observers: list[SchedulerObserver] = []
        self._shared: dict[Priority, Threadlet] = {}
        self.diagnostics: list[SchedulerInvariantError] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def host(self) -> Host:
        return self._host

    @property
    def default_controls(self) -> ThreadletControls:
        return self._default_controls

    @property
    def running(self) -> Threadlet | None:
        return self._running

    @property
    def n_threads(self) -> int:
        """Threadlets in the running slot or a queue (deferred ones excluded)."""
        return self._n_threads

    @property
    def is_shut_down(self) -> bool:
        return self._closed

    @property
    def invariant_violations(self) -> int:
        return len(self.diagnostics)

    def is_stepping(self, threadlet: Threadlet) -> bool:
        """True while ``threadlet``'s step is executing."""
        return self._stepping is threadlet

    def must_yield(self, threadlet: Threadlet) -> bool:
        work_start = threadlet._slot.work_start
        if work_start is None:
            return True
        return self._host.now() - work_start >= threadlet.controls.timeslice

    # ------------------------------------------------------------------
    # Threadlet notifications
    # ------------------------------------------------------------------

    def threadlet_started(self, threadlet: Threadlet) -> None:
        if self._closed:
            raise SchedulerShutdownError()
        self._admit(threadlet, "threadlet_started")

    def resume_threadlet(self, threadlet: Threadlet) -> None:
        if self._closed:
            threadlet._failed(SchedulerShutdownError())
            return
        self._admit(threadlet, "resume_threadlet")

    def threadlet_yielding(self, threadlet: Threadlet) -> None:
        if self._running is not threadlet:
            self._report("threadlet_yielding", "threadlet is not running", threadlet)
            if self._running is None:
                self._dispatch()
            return
        slot = threadlet._slot
        controls = threadlet.controls
        work = self._host.now() - (slot.work_start if slot.work_start is not None else 0.0)
        slot.work_timer += work
        slot.work_start = None
        self._running = None

        if work < controls.timeslice:
            if not self._queues[RUN_QUEUE]:
                self._promote_one()
            self._enqueue(threadlet, RUN_QUEUE)
            self._emit(ThreadletRequeued, threadlet, work_time=work)
        elif work < controls.yield_interval:
            delay = controls.yield_interval - work
            self._n_threads -= 1
            slot.status = SlotStatus.DEFERRED
            slot.queue_id = None
            slot.timer = self._host.call_later(delay, self._yield_finished, threadlet)
            self._deferred[threadlet.id] = threadlet
            self._emit(ThreadletDeferred, threadlet, work_time=work, delay=delay)
        else:
            self._enqueue(threadlet, controls.priority)
            self._emit(ThreadletDemoted, threadlet, work_time=work, priority=int(controls.priority))
        self._dispatch()

    def threadlet_waiting(self, threadlet: Threadlet) -> None:
        if self._running is not threadlet:
            self._report("threadlet_waiting", "threadlet is not running", threadlet)
            return
        self._detach_running(threadlet)
        self._emit(ThreadletWaiting, threadlet)
        self._dispatch()

    def pause_threadlet(self, threadlet: Threadlet) -> None:
        status = threadlet._slot.status
        if self._running is threadlet:
            self._detach_running(threadlet)
            self._emit(ThreadletDetached, threadlet)
            self._dispatch()
        elif status is SlotStatus.QUEUED:
            self._remove_queued(threadlet)
            self._emit(ThreadletDetached, threadlet)
        elif status is SlotStatus.DEFERRED:
            self._cancel_deferred(threadlet)
            self._emit(ThreadletDetached, threadlet)
        else:
            self._report("pause_threadlet", "threadlet is not scheduled", threadlet)

    def threadlet_ended(self, threadlet: Threadlet) -> None:
        status = threadlet._slot.status
        if self._running is threadlet:
            self._detach_running(threadlet)
            self._emit(ThreadletEnded, threadlet, end_state=threadlet.end_state)
            self._dispatch()
            return
        if status is SlotStatus.QUEUED:
            self._remove_queued(threadlet)
        elif status is SlotStatus.DEFERRED:
            self._cancel_deferred(threadlet)
        self._emit(ThreadletEnded, threadlet, end_state=threadlet.end_state)

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def _admit(self, threadlet: Threadlet, operation: str) -> None:
        status = threadlet._slot.status
        if status is not SlotStatus.DETACHED:
            self._report(operation, f"threadlet is already {status.name.lower()}", threadlet)
            return
        threadlet._slot.work_timer = 0.0
        self._n_threads += 1
        self._enqueue(threadlet, threadlet.controls.priority)
        self._emit(ThreadletQueued, threadlet, priority=int(threadlet.controls.priority))
        if self._running is None:
            self._dispatch()

    def _enqueue(self, threadlet: Threadlet, queue_id: int) -> None:
        slot = threadlet._slot
        slot.status = SlotStatus.QUEUED
        slot.queue_id = queue_id
        self._queues[queue_id].append(threadlet)

    def _promote(self) -> None:
        level = next(
            (lvl for lvl in range(Priority.HIGH, Priority.LOW + 1) if self._queues[lvl]), None
        )
        if level is None:
            return
        self._move_head(level, RUN_QUEUE)
        for lower in range(level + 1, self._cycle + 1):
            if self._queues[lower]:
                self._move_head(lower, lower - 1)
        self._cycle = self._cycle % Priority.LOW + 1

    def _promote_one(self) -> None:
        for level in range(Priority.HIGH, Priority.LOW + 1):
            if self._queues[level]:
                self._move_head(level, level - 1)
                return

    def _move_head(self, source: int, target: int) -> None:
        threadlet = self._queues[source].popleft()
        threadlet._slot.queue_id = target
        self._queues[target].append(threadlet)

    def _remove_queued(self, threadlet: Threadlet) -> None:
        slot = threadlet._slot
        queue = self._queues[slot.queue_id] if slot.queue_id is not None else None
        try:
            if queue is None:
                raise ValueError(threadlet)
            queue.remove(threadlet)
        except ValueError:
            self._report("remove_queued", "threadlet is not in its queue", threadlet)
        else:
            self._n_threads -= 1
        slot.status = SlotStatus.DETACHED
        slot.queue_id = None

    def _cancel_deferred(self, threadlet: Threadlet) -> None:
        slot = threadlet._slot
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        self._deferred.pop(threadlet.id, None)
        slot.status = SlotStatus.DETACHED

    def _detach_running(self, threadlet: Threadlet) -> None:
        slot = threadlet._slot
        if slot.work_start is not None:
            slot.work_timer += self._host.now() - slot.work_start
        slot.work_start = None
        slot.status = SlotStatus.DETACHED
        slot.queue_id = None
        self._n_threads -= 1
        self._running = None

    def _yield_finished(self, threadlet: Threadlet) -> None:
        slot = threadlet._slot
        slot.timer = None
        if slot.status is not SlotStatus.DEFERRED:
            logger.debug("Deferred timer fired for %s after it left the timer", threadlet.name)
            return
        del self._deferred[threadlet.id]
        self._n_threads += 1
        self._enqueue(threadlet, threadlet.controls.priority)
        self._emit(ThreadletQueued, threadlet, priority=int(threadlet.controls.priority))
        if self._running is None:
            self._dispatch()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self) -> None:
        self._running = None
        if self._closed or self._n_threads <= 0:
            return
        run_queue = self._queues[RUN_QUEUE]
        if not run_queue:
            self._promote()
        if not run_queue:
            self._report("dispatch", f"{self._n_threads} threadlets counted but none queued")
            self._n_threads = 0
            return
        threadlet = run_queue.popleft()
        slot = threadlet._slot
        slot.status = SlotStatus.RUNNING
        slot.queue_id = None
        slot.work_start = self._host.now()
        self._running = threadlet
        self._dispatch_seq += 1
        self._emit(ThreadletDispatched, threadlet, dispatch=self._dispatch_seq)
        self._host.call_soon(self._run_worker, threadlet, self._dispatch_seq)

    def _run_worker(self, threadlet: Threadlet, seq: int) -> None:
        if seq != self._dispatch_seq or self._running is not threadlet:
            logger.debug("Skipping stale dispatch %d of %s", seq, threadlet.name)
            return
        self._stepping = threadlet
        failure: Exception | None = None
        try:
            value = threadlet._drive()
        except Exception as exc:
            failure = exc
        finally:
            self._stepping = None
        if failure is not None:
            threadlet._failed(failure)
        elif threadlet.is_waiting:
            threadlet._wait_on(value)
        else:
            threadlet._yielded(value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Stop dispatching and fail every scheduled threadlet's task.

        Threadlets waiting on a future or paused fail when they next try to
        re-enter the scheduler. Called from another thread, the shutdown runs
        on the host thread.
        """
        if not self._host.in_host_thread():
            self._host.call_soon_threadsafe(self.shutdown)
            return
        if self._closed:
            return
        self._closed = True
        tracked: list[Threadlet] = []
        if self._running is not None:
            tracked.append(self._running)
        for queue in self._queues:
            tracked.extend(queue)
            queue.clear()
        for threadlet in self._deferred.values():
            if threadlet._slot.timer is not None:
                threadlet._slot.timer.cancel()
                threadlet._slot.timer = None
            tracked.append(threadlet)
        self._deferred.clear()
        self._running = None
        self._n_threads = 0
        for threadlet in tracked:
            threadlet._slot.status = SlotStatus.DETACHED
            threadlet._slot.queue_id = None
            threadlet._slot.work_start = None
            threadlet._failed(SchedulerShutdownError())
        logger.info("Scheduler shut down; abandoned %d threadlets", len(tracked))

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Shared threadlets and timers
    # ------------------------------------------------------------------

    def shared_threadlet(self, priority: Priority | int | str) -> ThreadletInterface:
        """Run/bind_run interface of the scheduler-wide threadlet at ``priority``."""
        from threadlet.threadlet import Threadlet

        priority = Priority.coerce(priority)
        threadlet = self._shared.get(priority)
        if threadlet is None:
            threadlet = Threadlet(
                self, f"{priority.name.title()}Priority", {"priority": priority}
            )
            self._shared[priority] = threadlet
        return threadlet.public_interface()

    @property
    def high_priority(self) -> ThreadletInterface:
        return self.shared_threadlet(Priority.HIGH)

    @property
    def default_priority(self) -> ThreadletInterface:
        return self.shared_threadlet(Priority.DEFAULT)

    @property
    def low_priority(self) -> ThreadletInterface:
        return self.shared_threadlet(Priority.LOW)

    def ms_sleep(self, ms: float, value: Any = None) -> LazyPromise[Any]:
        """Promise resolved with ``value`` after ``ms`` milliseconds."""
        ensure_number(ms, name="ms")
        promise: LazyPromise[Any] = LazyPromise(host=self._host)
        self._host.call_later(ms, promise.resolve, value)
        return promise

    def sleep(self, seconds: float, value: Any = None) -> LazyPromise[Any]:
        ensure_number(seconds, name="seconds")
        return self.ms_sleep(seconds * 1000.0, value)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def add_observer(self, observer: SchedulerObserver) -> None:
        ensure_callable(observer, name="observer")
        self._observers.append(observer)

    def remove_observer(self, observer: SchedulerObserver) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            logger.debug("Observer %r was not registered", observer)

    def snapshot(self) -> SchedulerSnapshot:
        running = self._running.name if self._running is not None else None
        return SchedulerSnapshot(
            running=running,
            n_threads=self._n_threads,
            queue_depths=frozendict({i: len(q) for i, q in enumerate(self._queues)}),
            deferred=len(self._deferred),
            dispatches=self._dispatch_seq,
            closed=self._closed,
        )

    def _emit(self, event_type: type[SchedulerEvent], threadlet: Threadlet, **fields: Any) -> None:
        if not self._observers:
            return
        event = event_type(
            threadlet_id=threadlet.id, name=threadlet.name, time=self._host.now(), **fields
        )
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Scheduler observer %r failed on %s", observer, event)

    def _report(self, operation: str, message: str, threadlet: Threadlet | None = None) -> None:
        error = SchedulerInvariantError(
            operation, message, threadlet.name if threadlet is not None else None
        )
        self.diagnostics.append(error)
        logger.error("Scheduler invariant violated: %s", error, stack_info=True)

    def __repr__(self) -> str:
        running = self._running.name if self._running is not None else None
        return f"<Scheduler running={running!r} n_threads={self._n_threads} closed={self._closed}>"


__all__ = [
    "RUN_QUEUE",
    "Scheduler",
    "SchedulerObserver",
    "SchedulerSnapshot",
    "SchedulingSlot",
    "SlotStatus",
]
