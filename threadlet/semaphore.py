"""Synchronisation primitives for threadlets and inline computations.

Both primitives hand out promises, so they are used by yielding (inside a
threadlet) or awaiting (inline) the result of ``wait``/``start``.

Example:
    section = CriticalSection(scheduler.host)

    def update(store, key):
        current = yield store.load(key)
        yield store.save(key, current + 1)

    worker_a.run(section.run, update, store, "hits")
    worker_b.run(section.run, update, store, "hits")
"""

from __future__ import annotations

import functools
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from threadlet._validators import ensure_optional_number
from threadlet.promise import LazyPromise
from threadlet.threadable import StepGenerator, as_generator, bind_as_generator

if TYPE_CHECKING:
    from threadlet.hosts import Host, TimerHandle


@dataclass
class _Waiter:
    promise: LazyPromise[Any]
    timer: TimerHandle | None = None


class Semaphore:
    """Counting semaphore whose signals carry values.

    ``signals`` is either a positive count of ``None`` signals or a sequence of
    initial signal values.
    """

    def __init__(
        self,
        signals: int | Sequence[Any] | None = None,
        host: Host | None = None,
    ) -> None:
        if signals is None:
            values: list[Any] = []
        elif isinstance(signals, int) and not isinstance(signals, bool):
            if signals <= 0:
                raise ValueError(f"signals must be > 0, got {signals}")
            values = [None] * signals
        elif isinstance(signals, (list, tuple)):
            values = list(signals)
        else:
            raise TypeError(
                "signals must be a positive int or a sequence of values, "
                f"got {type(signals).__name__}"
            )
        self.host = host
        self._signals: deque[Any] = deque(values)
        self._waiters: deque[_Waiter] = deque()

    @property
    def available(self) -> int:
        return len(self._signals)

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    def signal(self, value: Any = None) -> Semaphore:
        """Wake the oldest waiter with ``value``, or store it for the next wait."""
        if self._waiters:
            waiter = self._waiters.popleft()
            if waiter.timer is not None:
                waiter.timer.cancel()
            waiter.promise.resolve(value)
        else:
            self._signals.append(value)
        return self

    def wait(self, ms: float | None = None, timeout_value: Any = None) -> LazyPromise[Any]:
        """Promise for the next signal value.

        With ``ms`` > 0 the promise resolves with ``timeout_value`` if no signal
        arrives in time.
        """
        ensure_optional_number(ms, name="ms")
        if self._signals:
            return LazyPromise.resolved(self._signals.popleft(), host=self.host)
        waiter = _Waiter(LazyPromise(host=self.host))
        if ms is not None and ms > 0:
            if self.host is None:
                raise TypeError("Semaphore.wait timeouts require a host")
            waiter.timer = self.host.call_later(ms, self._timed_out, waiter, timeout_value)
        self._waiters.append(waiter)
        return waiter.promise

    def _timed_out(self, waiter: _Waiter, value: Any) -> None:
        waiter.timer = None
        try:
            self._waiters.remove(waiter)
        except ValueError:
            return
        waiter.promise.resolve(value)

    def __repr__(self) -> str:
        return f"<Semaphore available={self.available} waiting={self.waiting}>"


class CriticalSection:
    """Serialises access to a sequence of asynchronous steps."""

    def __init__(self, host: Host | None = None) -> None:
        self._semaphore = Semaphore(1, host)

    @property
    def is_locked(self) -> bool:
        return self._semaphore.available == 0

    def start(self) -> LazyPromise[Any]:
        return self._semaphore.wait()

    def end(self) -> None:
        self._semaphore.signal()

    def run(self, fn: Any, *args: Any, **kwargs: Any) -> StepGenerator:
        """Nested computation running ``fn`` inside the section."""
        return self._run(functools.partial(as_generator, fn, *args, **kwargs))

    def bind_run(self, this: Any, fn: Any, *args: Any, **kwargs: Any) -> StepGenerator:
        return self._run(functools.partial(bind_as_generator, this, fn, *args, **kwargs))

    def _run(self, make_step: functools.partial[StepGenerator]) -> StepGenerator:
        entry = self.start()
        try:
            yield entry
        except GeneratorExit:
            # closed before entering: release the section once it is granted
            entry.then(lambda _: self.end())
            raise
        try:
            return (yield make_step())
        finally:
            self.end()


__all__ = [
    "CriticalSection",
    "Semaphore",
]
