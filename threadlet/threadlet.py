"""Threadlets: sequential task queues stepped cooperatively by a Scheduler.

A threadlet runs one task at a time. Each task is a step sequence (see
``threadlet.threadable``) that the scheduler resumes inside its dispatch slot
until it yields, waits on a future, ends or fails. Tasks submitted to the same
threadlet settle in submission order; a failing task rejects its own promise
and the threadlet moves on to the next one.

Lifecycle states:

- ready: idle, the next queued task may start
- running: a task is scheduled or stepping
- pausing: pause requested from inside the task's own step
- paused: removed from scheduling until ``resume()``
- ending: the task returned, its promise is about to resolve
- waiting: suspended on a future
- stopping: stop requested, the task settles ``None`` after its slice

End states of the last task are ready, running, ended, stopped and failed.

``run``, ``bind_run``, ``stop``, ``pause`` and ``resume`` may be called from
any thread. Off the host thread they are queued to the host thread, and
``run`` returns the task's promise straight away.

Example:
    scheduler = Scheduler(SimulationHost())
    worker = Threadlet(scheduler, "worker", {"priority": "high"})

    def count(n):
        total = 0
        for i in range(n):
            total += yield i
        return total

    promise = worker.run(count, 5)
"""

from __future__ import annotations

import functools
import inspect
import itertools
import logging
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from threadlet._validators import ensure_optional_str
from threadlet.controls import ThreadletControls
from threadlet.errors import SchedulerShutdownError
from threadlet.promise import (
    Contract,
    LazyPromise,
    get_default_catch_handler,
    is_promisable,
    on_settlement,
)
from threadlet.scheduler import Scheduler, SchedulingSlot
from threadlet.threadable import (
    StepGenerator,
    as_generator,
    bind_as_generator,
    is_nested,
    nested_generator,
)

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class ThreadletState(Enum):
    READY = "ready"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    ENDING = "ending"
    ENDED = "ended"
    FAILED = "failed"
    WAITING = "waiting"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ThreadletInterface:
    """Run-only view of a threadlet, safe to hand to other components."""

    run: Callable[..., LazyPromise[Any]]
    bind_run: Callable[..., LazyPromise[Any]]


@dataclass
class _Task:
    make_step: Callable[[], StepGenerator]
    promise: LazyPromise[Any]


class Threadlet:
    """A pseudo-thread running queued tasks one after another."""

    def __init__(
        self,
        scheduler: Scheduler,
        name: str | None = None,
        controls: ThreadletControls | Mapping[str, Any] | None = None,
    ) -> None:
        if not isinstance(scheduler, Scheduler):
            raise TypeError(f"scheduler must be Scheduler, got {type(scheduler).__name__}")
        ensure_optional_str(name, name="name")
        self.scheduler = scheduler
        self.id = next(_ids)
        self.name = name or f"Threadlet:{self.id}"
        self.controls = ThreadletControls.from_value(controls, scheduler.default_controls)
        self.contract = Contract(self, self._next_task)
        self.end_value: Any = None
        self._state = ThreadletState.READY
        self._end_state = ThreadletState.READY
        self._wait_state: ThreadletState | None = None
        self._resume_state: ThreadletState | None = None
        self._pause_pending = False
        self._queue: deque[_Task] = deque()
        self._task: _Task | None = None
        self._step: StepGenerator | None = None
        self._stack: list[StepGenerator] = []
        self._next_parm: Any = None
        self._slot = SchedulingSlot()
        self._interface: ThreadletInterface | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, fn: Any, *args: Any, **kwargs: Any) -> LazyPromise[Any]:
        """Queue ``fn(*args, **kwargs)`` as a task and return its promise."""
        return self._submit(functools.partial(as_generator, fn, *args, **kwargs))

    def bind_run(self, this: Any, fn: Any, *args: Any, **kwargs: Any) -> LazyPromise[Any]:
        """As ``run`` with ``this`` bound to ``fn``; ``fn`` may be a method name."""
        if isinstance(fn, str) and not callable(getattr(this, fn, None)):
            raise TypeError(f"{type(this).__name__}.{fn} is not a method")
        return self._submit(functools.partial(bind_as_generator, this, fn, *args, **kwargs))

    def stop(self) -> Threadlet:
        """Drop queued tasks and stop the current one at the end of its slice."""
        if self._handed_off(self.stop):
            return self
        dropped = list(self._queue)
        self._queue.clear()
        for task in dropped:
            task.promise.resolve(None)
        if dropped:
            logger.debug("%s dropped %d queued tasks", self.name, len(dropped))

        state = self._state
        if state is ThreadletState.WAITING:
            if self._wait_state is not ThreadletState.ENDING:
                self._wait_state = ThreadletState.STOPPING
        elif state in (ThreadletState.RUNNING, ThreadletState.PAUSING):
            if self.scheduler.is_stepping(self):
                self._state = ThreadletState.STOPPING
            else:
                self._finish(ThreadletState.STOPPED, None)
        elif state is ThreadletState.PAUSED:
            if self._resume_state is ThreadletState.RUNNING:
                self._finish(ThreadletState.STOPPED, None)
            else:
                self._state = ThreadletState.READY
                self._resume_state = None
        return self

    def pause(self) -> Threadlet:
        """Remove the threadlet from scheduling until ``resume()``."""
        if self._handed_off(self.pause):
            return self
        state = self._state
        if state is ThreadletState.RUNNING:
            if self.scheduler.is_stepping(self):
                self._state = ThreadletState.PAUSING
            else:
                self._state = ThreadletState.PAUSED
                self._resume_state = ThreadletState.RUNNING
                self.scheduler.pause_threadlet(self)
        elif state is ThreadletState.READY:
            self._state = ThreadletState.PAUSED
            self._resume_state = ThreadletState.READY
        elif state is ThreadletState.WAITING:
            if self._wait_state is ThreadletState.RUNNING:
                self._wait_state = ThreadletState.PAUSING
            elif self._wait_state is ThreadletState.ENDING:
                # returned future: the task settles, then the threadlet holds
                self._pause_pending = True
        return self

    def resume(self) -> Threadlet:
        if self._handed_off(self.resume):
            return self
        state = self._state
        if state is ThreadletState.PAUSING:
            self._state = ThreadletState.RUNNING
        elif state is ThreadletState.WAITING:
            if self._wait_state is ThreadletState.PAUSING:
                self._wait_state = ThreadletState.RUNNING
            self._pause_pending = False
        elif state is ThreadletState.PAUSED:
            resume_state, self._resume_state = self._resume_state, None
            if resume_state is ThreadletState.RUNNING:
                self._state = ThreadletState.RUNNING
                self.scheduler.resume_threadlet(self)
            else:
                self._state = ThreadletState.READY
                self._next_task()
        return self

    def reject(self, error: BaseException) -> None:
        """Report ``error`` as unhandled under this threadlet's name.

        Usable as a final catch handler: ``promise.catch(threadlet.reject)``.
        """
        get_default_catch_handler()(error, self.name)

    def public_interface(self) -> ThreadletInterface:
        if self._interface is None:
            self._interface = ThreadletInterface(run=self.run, bind_run=self.bind_run)
        return self._interface

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def end_state(self) -> str:
        return self._end_state.value

    @property
    def pending_tasks(self) -> int:
        return len(self._queue)

    @property
    def is_ready(self) -> bool:
        return self._state is ThreadletState.READY

    @property
    def is_running(self) -> bool:
        return self._state is ThreadletState.RUNNING

    @property
    def is_pausing(self) -> bool:
        return self._state is ThreadletState.PAUSING or (
            self._state is ThreadletState.WAITING
            and (self._wait_state is ThreadletState.PAUSING or self._pause_pending)
        )

    @property
    def is_paused(self) -> bool:
        return self._state is ThreadletState.PAUSED or self.is_pausing

    @property
    def is_ending(self) -> bool:
        return self._state is ThreadletState.ENDING

    @property
    def is_waiting(self) -> bool:
        return self._state is ThreadletState.WAITING

    @property
    def is_stopping(self) -> bool:
        return self._state is ThreadletState.STOPPING or (
            self._state is ThreadletState.WAITING
            and self._wait_state is ThreadletState.STOPPING
        )

    @property
    def has_paused(self) -> bool:
        return self._state is ThreadletState.PAUSED

    @property
    def has_ended(self) -> bool:
        return self._end_state is ThreadletState.ENDED

    @property
    def has_stopped(self) -> bool:
        return self._end_state is ThreadletState.STOPPED

    @property
    def has_finished(self) -> bool:
        return self._end_state in (ThreadletState.ENDED, ThreadletState.STOPPED)

    @property
    def has_failed(self) -> bool:
        return self._end_state is ThreadletState.FAILED

    # ------------------------------------------------------------------
    # Task queue
    # ------------------------------------------------------------------

    def _submit(self, make_step: Callable[[], StepGenerator]) -> LazyPromise[Any]:
        if self.scheduler.is_shut_down:
            raise SchedulerShutdownError()
        task = _Task(make_step, self.contract.seal(self.scheduler.host))
        if not self._handed_off(self._queue_task, task):
            self._queue_task(task)
        return task.promise

    def _queue_task(self, task: _Task) -> None:
        if self.scheduler.is_shut_down:
            task.promise.reject(SchedulerShutdownError())
            return
        self._queue.append(task)
        self._next_task()

    def _handed_off(self, method: Callable[..., Any], *args: Any) -> bool:
        """Queue ``method`` on the host thread when called from another thread."""
        host = self.scheduler.host
        if host.in_host_thread():
            return False
        host.call_soon_threadsafe(method, *args)
        return True

    def _next_task(self) -> None:
        # also the contract's on_finally: every settled task starts the next
        if self._state is not ThreadletState.READY or not self._queue:
            return
        self._start(self._queue.popleft())

    def _start(self, task: _Task) -> None:
        if self.scheduler.is_shut_down:
            self._end_state = ThreadletState.FAILED
            self.end_value = SchedulerShutdownError()
            task.promise.reject(self.end_value)
            return
        try:
            step = task.make_step()
        except Exception as exc:
            logger.debug("%s could not start task: %r", self.name, exc)
            self._end_state = ThreadletState.FAILED
            self.end_value = exc
            task.promise.reject(exc)
            return
        self._task = task
        self._step = step
        self._stack = []
        self._next_parm = None
        self._state = self._end_state = ThreadletState.RUNNING
        self.scheduler.threadlet_started(self)

    # ------------------------------------------------------------------
    # Stepping, called from the scheduler's dispatch slot
    # ------------------------------------------------------------------

    def _drive(self) -> Any:
        """Step the task until it must hand control back to the scheduler."""
        if self._state is ThreadletState.WAITING:
            self._state, self._wait_state = self._wait_state, None
        if self._state is not ThreadletState.RUNNING:
            return self._next_parm
        scheduler = self.scheduler
        value = self._next_parm
        while True:
            try:
                value = self._step.send(value)
                done = False
            except StopIteration as stop:
                value, done = stop.value, True

            if done:
                if is_nested(value):
                    # chain: replace without stacking
                    self._step, value, done = nested_generator(value), None, False
                elif self._stack:
                    self._step, done = self._stack.pop(), False
                else:
                    self._task_returned()
            elif is_nested(value):
                self._stack.append(self._step)
                self._step, value = nested_generator(value), None

            if is_promisable(value):
                self._wait_state, self._state = self._state, ThreadletState.WAITING
                scheduler.threadlet_waiting(self)
                return value
            if done or self._state is not ThreadletState.RUNNING or scheduler.must_yield(self):
                return value

    def _task_returned(self) -> None:
        if self._state is ThreadletState.PAUSING:
            self._pause_pending = True
            self._state = ThreadletState.ENDING
        elif self._state is not ThreadletState.STOPPING:
            self._state = ThreadletState.ENDING

    def _yielded(self, value: Any) -> None:
        if self._task is None:
            logger.debug("%s ignoring value for a task that already settled", self.name)
            return
        self._next_parm = value
        state = self._state
        if state is ThreadletState.RUNNING:
            self.scheduler.threadlet_yielding(self)
        elif state is ThreadletState.PAUSING:
            self._state = ThreadletState.PAUSED
            self._resume_state = ThreadletState.RUNNING
            self.scheduler.pause_threadlet(self)
        elif state is ThreadletState.WAITING:
            self._wait_settled()
        elif state is ThreadletState.STOPPING:
            self._finish(ThreadletState.STOPPED, None)
        else:
            self._finish(ThreadletState.ENDED, value)

    def _wait_on(self, value: Any) -> None:
        task = self._task

        def settled(result: Any) -> None:
            if self._task is task and self._state is ThreadletState.WAITING:
                self._yielded(result)

        def failed(error: BaseException) -> None:
            if self._task is task and self._state is ThreadletState.WAITING:
                self._failed(error)

        try:
            on_settlement(value, settled, failed, self.scheduler.host)
        except TypeError as exc:
            if inspect.iscoroutine(value):
                value.close()
            self._failed(exc)

    def _wait_settled(self) -> None:
        wait_state = self._wait_state
        if wait_state is ThreadletState.STOPPING:
            self._finish(ThreadletState.STOPPED, None)
        elif wait_state is ThreadletState.PAUSING:
            self._state = ThreadletState.PAUSED
            self._wait_state = None
            self._resume_state = ThreadletState.RUNNING
        else:
            self.scheduler.resume_threadlet(self)

    def _failed(self, error: BaseException) -> None:
        task = self._task
        if task is None:
            logger.debug("%s ignoring failure of a task that already settled", self.name)
            return
        pause = self.is_pausing or self._pause_pending
        self._reset()
        self._end_state = ThreadletState.FAILED
        self.end_value = error
        if pause:
            self._state = ThreadletState.PAUSED
            self._resume_state = ThreadletState.READY
        self.scheduler.threadlet_ended(self)
        task.promise.reject(error)

    def _finish(self, end_state: ThreadletState, value: Any) -> None:
        task = self._task
        if task is None:
            return
        pause = self._pause_pending
        self._reset()
        self._end_state = end_state
        self.end_value = value
        if pause:
            self._state = ThreadletState.PAUSED
            self._resume_state = ThreadletState.READY
        self.scheduler.threadlet_ended(self)
        task.promise.resolve(value)

    def _reset(self) -> None:
        generators = [*self._stack, self._step] if self._step is not None else self._stack
        self._task = None
        self._step = None
        self._stack = []
        self._next_parm = None
        self._state = ThreadletState.READY
        self._wait_state = None
        self._resume_state = None
        self._pause_pending = False
        if self.scheduler.is_stepping(self):
            return
        for gen in reversed(generators):
            try:
                gen.close()
            except Exception:
                logger.exception("Closing a generator of %s failed", self.name)

    def __repr__(self) -> str:
        return f"<Threadlet {self.name!r} state={self.state} end_state={self.end_state}>"


__all__ = [
    "Threadlet",
    "ThreadletInterface",
    "ThreadletState",
]
