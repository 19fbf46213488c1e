"""Workers: sequential task queues that run without a scheduler.

A ``Worker`` calls queued functions one after another. A task starts once the
previous task's promise has settled, so a function returning a future holds the
queue until that future settles. Nothing is time-sliced: each function runs to
completion when its turn comes.

Two collectors build on a private worker:

- ``WorkerGroup`` collects tasks and settles one promise with the list of
  their results, in submission order.
- ``WorkerProcess`` chains steps: each step's result feeds the arguments of
  the next one through a ``StepArg``, and the process settles with the last
  step's result.

Example:
    group = WorkerGroup("fetch")
    group.run(load, "a").run(load, "b")
    promise = group.close()             # resolves to [load("a"), load("b")]

    process = WorkerProcess("pipeline")
    process.steps(read, (StepArg.PREPEND, parse, "utf-8"), store)
    promise = process.close()           # resolves to store(parse(read(), "utf-8"))
"""

from __future__ import annotations

import functools
import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from threadlet._validators import ensure_callable, ensure_optional_str
from threadlet.errors import WorkerClosedError
from threadlet.promise import Contract, LazyPromise, gather, get_default_catch_handler

if TYPE_CHECKING:
    from threadlet.hosts import Host

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class _WorkerTask:
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    promise: LazyPromise[Any]


def _resolve_method(this: Any, fn: Any) -> Callable[..., Any]:
    if isinstance(fn, str):
        method = getattr(this, fn, None)
        if not callable(method):
            raise TypeError(f"{type(this).__name__}.{fn} is not a method")
        return method
    ensure_callable(fn, name="fn")
    return functools.partial(fn, this)


class Worker:
    """Runs queued functions one at a time, in submission order."""

    def __init__(self, name: str | None = None, host: Host | None = None) -> None:
        ensure_optional_str(name, name="name")
        self.name = name or "Worker"
        self.host = host
        self.contract = Contract(self, self._task_settled)
        self._state = WorkerState.READY
        self._queue: deque[_WorkerTask] = deque()
        self._draining = False

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> LazyPromise[Any]:
        """Queue ``fn(*args, **kwargs)`` and return the promise of its result."""
        return self._enqueue(fn, args, kwargs)

    def bind_run(self, this: Any, fn: Any, *args: Any, **kwargs: Any) -> LazyPromise[Any]:
        """As ``run`` with ``this`` bound to ``fn``; ``fn`` may be a method name."""
        return self.run(_resolve_method(this, fn), *args, **kwargs)

    def stop(self) -> Worker:
        """Refuse new tasks; queued tasks resolve ``None`` without running."""
        self._state = WorkerState.STOPPED
        dropped = list(self._queue)
        self._queue.clear()
        for task in dropped:
            task.promise.resolve(None)
        if dropped:
            logger.debug("%s dropped %d queued tasks", self.name, len(dropped))
        return self

    def pause(self) -> Worker:
        """Hold queued tasks; a running task still completes."""
        if self._state is not WorkerState.STOPPED:
            self._state = WorkerState.PAUSED
        return self

    def resume(self) -> Worker:
        if self._state is WorkerState.PAUSED:
            self._state = WorkerState.READY
            self._next_task()
        return self

    def reject(self, error: BaseException) -> None:
        """Report ``error`` as unhandled under this worker's name.

        Usable as a final catch handler: ``promise.catch(worker.reject)``.
        """
        get_default_catch_handler()(error, self.name)

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def pending_tasks(self) -> int:
        return len(self._queue)

    @property
    def is_ready(self) -> bool:
        return self._state is WorkerState.READY

    @property
    def is_running(self) -> bool:
        return self._state is WorkerState.RUNNING

    @property
    def is_paused(self) -> bool:
        return self._state is WorkerState.PAUSED

    @property
    def is_stopped(self) -> bool:
        return self._state is WorkerState.STOPPED

    def _enqueue(
        self,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        watch: Callable[[LazyPromise[Any]], Any] | None = None,
    ) -> LazyPromise[Any]:
        ensure_callable(fn, name="fn")
        if self._state is WorkerState.STOPPED:
            raise WorkerClosedError(f"{self.name} has been stopped")
        task = _WorkerTask(fn, args, kwargs, self.contract.seal(self.host))
        # handlers attached here run before the next task starts
        if watch is not None:
            watch(task.promise)
        self._queue.append(task)
        self._next_task()
        return task.promise

    def _next_task(self) -> None:
        # synchronous settlements re-enter here; the outer loop picks them up
        if self._draining:
            return
        self._draining = True
        try:
            while self._state is WorkerState.READY and self._queue:
                self._run_task(self._queue.popleft())
        finally:
            self._draining = False

    def _run_task(self, task: _WorkerTask) -> None:
        self._state = WorkerState.RUNNING
        try:
            result = task.fn(*task.args, **task.kwargs)
        except Exception as exc:
            logger.debug("%s task failed: %r", self.name, exc)
            task.promise.reject(exc)
        else:
            task.promise.resolve(result)

    def _task_settled(self) -> None:
        if self._state is WorkerState.RUNNING:
            self._state = WorkerState.READY
        self._next_task()

    def __repr__(self) -> str:
        return f"<Worker {self.name!r} state={self.state} pending={len(self._queue)}>"


class StepArg:
    """Builds a step's arguments from the previous step's result.

    A StepArg is called with ``(value, args)`` and returns the argument tuple.
    """

    NONE: StepArg
    PREPEND: StepArg
    APPEND: StepArg
    ANY: StepArg
    ALL: StepArg
    ARGS: StepArg

    def __init__(
        self, build: Callable[[Any, tuple[Any, ...]], Sequence[Any]], name: str = "custom"
    ) -> None:
        ensure_callable(build, name="build")
        self._build = build
        self.name = name

    def __call__(self, value: Any, args: tuple[Any, ...]) -> tuple[Any, ...]:
        return tuple(self._build(value, args))

    @classmethod
    def arg(cls, index: int) -> StepArg:
        """Put the value at ``index`` of the arguments."""

        def build(value: Any, args: tuple[Any, ...]) -> list[Any]:
            merged = list(args)
            merged[index] = value
            return merged

        return cls(build, f"arg({index})")

    @classmethod
    def map(cls, mappings: Sequence[int | None]) -> StepArg:
        """Spread a sequence result: item ``i`` goes to ``args[mappings[i]]``.

        ``None`` entries drop the matching item. A non-sequence result counts
        as a one-item sequence.
        """
        mappings = tuple(mappings)

        def build(value: Any, args: tuple[Any, ...]) -> list[Any]:
            items = value if isinstance(value, (list, tuple)) else (value,)
            merged = list(args)
            for item, index in zip(items, mappings):
                if index is not None:
                    merged[index] = item
            return merged

        return cls(build, f"map({list(mappings)})")

    def __repr__(self) -> str:
        return f"StepArg.{self.name}"


def _replace_first_none(value: Any, args: tuple[Any, ...]) -> tuple[Any, ...]:
    if None not in args:
        return (*args, value)
    index = args.index(None)
    return (*args[:index], value, *args[index + 1 :])


def _replace_each_none(value: Any, args: tuple[Any, ...]) -> tuple[Any, ...]:
    if not isinstance(value, (list, tuple)):
        return _replace_first_none(value, args)
    merged = list(args)
    items = iter(value)
    for index, arg in enumerate(args):
        if arg is not None:
            continue
        try:
            merged[index] = next(items)
        except StopIteration:
            break
    return (*merged, *items)


StepArg.NONE = StepArg(lambda value, args: args, "NONE")
StepArg.PREPEND = StepArg(lambda value, args: (value, *args), "PREPEND")
StepArg.APPEND = StepArg(lambda value, args: (*args, value), "APPEND")
StepArg.ANY = StepArg(_replace_first_none, "ANY")
StepArg.ALL = StepArg(_replace_each_none, "ALL")
StepArg.ARGS = StepArg(
    lambda value, args: tuple(value) if isinstance(value, (list, tuple)) else (value,), "ARGS"
)


class _GroupState(Enum):
    READY = "ready"
    RUNNING = "running"
    CLOSED = "closed"


class WorkerGroup:
    """Runs tasks on a private worker and settles with all their results.

    Tasks are collected until ``start()``; later tasks run as they are added.
    ``close()`` starts the group if needed and returns its promise, which
    rejects with the first task failure.
    """

    def __init__(self, name: str | None = None, host: Host | None = None) -> None:
        ensure_optional_str(name, name="name")
        self.name = name or type(self).__name__
        self.host = host
        self.contract = Contract(self)
        self._worker = Worker(self.name, host)
        self._state = _GroupState.READY
        self._pending: list[tuple[Callable[..., Any], tuple[Any, ...], dict[str, Any]]] = []
        self._promises: list[LazyPromise[Any]] = []
        self._promise: LazyPromise[Any] = self.contract.seal(host)
        self.failure: BaseException | None = None

    def run(self, fn: Any, *args: Any, **kwargs: Any) -> WorkerGroup:
        fn, args = self._task_call(fn, args)
        if self._state is _GroupState.CLOSED:
            raise WorkerClosedError(f"{self.name} has been closed")
        if self._state is _GroupState.READY:
            self._pending.append((fn, args, kwargs))
        else:
            self._submit(fn, args, kwargs)
        return self

    def bind_run(self, this: Any, fn: Any, *args: Any, **kwargs: Any) -> WorkerGroup:
        return self.run(_resolve_method(this, fn), *args, **kwargs)

    def tasks(self, *entries: Any) -> WorkerGroup:
        """Add several tasks; each entry is a callable or a ``(fn, *args)`` tuple."""
        for entry in entries:
            if isinstance(entry, tuple):
                self.run(*entry)
            else:
                self.run(entry)
        return self

    def start(self) -> LazyPromise[Any]:
        """Run the collected tasks; returns the group's promise."""
        if self._state is _GroupState.READY:
            self._state = _GroupState.RUNNING
            pending, self._pending = self._pending, []
            for fn, args, kwargs in pending:
                self._submit(fn, args, kwargs)
        return self._promise

    def close(self) -> LazyPromise[Any]:
        """Refuse further tasks and settle once every task has settled."""
        if self._state is _GroupState.CLOSED:
            return self._promise
        self.start()
        self._state = _GroupState.CLOSED
        self._promise.resolve(gather(self._promises, self.host).then(self._result))
        return self._promise

    def reject(self, error: BaseException) -> None:
        get_default_catch_handler()(error, self.name)

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def is_closed(self) -> bool:
        return self._state is _GroupState.CLOSED

    def _task_call(
        self, fn: Any, args: tuple[Any, ...]
    ) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        ensure_callable(fn, name="fn")
        return fn, args

    def _submit(
        self, fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]
    ) -> LazyPromise[Any]:
        promise = self._worker._enqueue(fn, args, kwargs, self._watch)
        self._promises.append(promise)
        return promise

    def _watch(self, promise: LazyPromise[Any]) -> None:
        promise.catch(self._task_failed)

    def _task_failed(self, error: BaseException) -> Any:
        if self.failure is None:
            self.failure = error
        raise error

    def _result(self, values: list[Any]) -> Any:
        return values

    def __repr__(self) -> str:
        tasks = len(self._promises)
        return f"<{type(self).__name__} {self.name!r} state={self.state} tasks={tasks}>"


class WorkerProcess(WorkerGroup):
    """Runs steps in order, feeding each result into the next step.

    A step entry may start with a ``StepArg`` that decides how the previous
    result joins the step's own arguments; the default ``StepArg.NONE`` leaves
    them unchanged. The first failing step rejects the process and drops the
    remaining steps.
    """

    def __init__(self, name: str | None = None, host: Host | None = None) -> None:
        super().__init__(name, host)
        self.last_value: Any = None

    def steps(self, *entries: Any) -> WorkerProcess:
        self.tasks(*entries)
        return self

    def _task_call(
        self, fn: Any, args: tuple[Any, ...]
    ) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        step_arg = StepArg.NONE
        if isinstance(fn, StepArg):
            if not args:
                raise TypeError(f"{fn!r} must be followed by a step function")
            step_arg, fn, args = fn, args[0], args[1:]
        ensure_callable(fn, name="fn")
        return functools.partial(self._call_step, step_arg, fn), args

    def _call_step(
        self, step_arg: StepArg, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        return fn(*step_arg(self.last_value, args), **kwargs)

    def _watch(self, promise: LazyPromise[Any]) -> None:
        super()._watch(promise)
        promise.then(self._store)

    def _store(self, value: Any) -> Any:
        self.last_value = value
        return value

    def _task_failed(self, error: BaseException) -> Any:
        if self.failure is None:
            self._worker.stop()
        return super()._task_failed(error)

    def _result(self, values: list[Any]) -> Any:
        return self.last_value if values else None


__all__ = [
    "StepArg",
    "Worker",
    "WorkerGroup",
    "WorkerProcess",
    "WorkerState",
]
