"""Host adapters that drive a Scheduler.

A host supplies the only primitives the scheduler needs from its environment:
a monotonic millisecond clock, a way to run a callback once the current one
returns, and a single-shot timer. Each host has one host thread; callbacks
requested from other threads are handed over to it. Two hosts are provided:

- ``AsyncioHost``: real time on an asyncio event loop.
- ``SimulationHost``: virtual time with deterministic callback ordering, for
  tests and offline simulation.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from threadlet._validators import ensure_callable, ensure_number
from threadlet.errors import SimulationHostError

logger = logging.getLogger(__name__)


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None: ...


@runtime_checkable
class Host(Protocol):
    """Event-loop primitives consumed by the scheduler and promises."""

    def now(self) -> float:
        """Monotonic time in milliseconds."""
        ...

    def in_host_thread(self) -> bool:
        """True when called from the thread that runs the host's callbacks."""
        ...

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None: ...

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None: ...

    def call_later(
        self, delay_ms: float, callback: Callable[..., Any], *args: Any
    ) -> TimerHandle: ...

    def as_future(self, awaitable: Awaitable[Any]) -> Any: ...


class AsyncioHost:
    """Host backed by an asyncio event loop.

    The host thread is the thread that creates the host, so create it on the
    thread running ``loop``. Calls from any other thread are handed to the
    loop with ``call_soon_threadsafe``.

    Example:
        async def main():
            scheduler = Scheduler(AsyncioHost())
            worker = Threadlet(scheduler, "worker")
            value = await worker.run(compute, 10)
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._thread_id = threading.get_ident()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def now(self) -> float:
        return self._loop.time() * 1000.0

    def in_host_thread(self) -> bool:
        return threading.get_ident() == self._thread_id

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        if self.in_host_thread():
            self._loop.call_soon(callback, *args)
        else:
            self._loop.call_soon_threadsafe(callback, *args)

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None:
        self._loop.call_soon_threadsafe(callback, *args)

    def call_later(
        self, delay_ms: float, callback: Callable[..., Any], *args: Any
    ) -> TimerHandle:
        delay = max(delay_ms, 0.0) / 1000.0
        if self.in_host_thread():
            return self._loop.call_later(delay, callback, *args)
        timer = _ForeignTimer(self)
        self._loop.call_soon_threadsafe(timer.arm, delay, callback, args)
        return timer

    def as_future(self, awaitable: Awaitable[Any]) -> asyncio.Future[Any]:
        return asyncio.ensure_future(awaitable, loop=self._loop)


class _ForeignTimer:
    """Timer requested from outside the host thread, armed on the loop."""

    def __init__(self, host: AsyncioHost) -> None:
        self._host = host
        self._handle: asyncio.TimerHandle | None = None
        self._cancelled = False
        self._lock = threading.Lock()

    def arm(self, delay: float, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._handle = self._host.loop.call_later(delay, callback, *args)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            handle = self._handle
        if handle is None:
            return
        if self._host.in_host_thread():
            handle.cancel()
        else:
            self._host.call_soon_threadsafe(handle.cancel)


@dataclass(order=True)
class SimTimer:
    when: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple[Any, ...] = field(compare=False, default=())
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class SimulationHost:
    """Deterministic host with a virtual millisecond clock.

    Ready callbacks run in FIFO order. When none are left the clock jumps to
    the earliest live timer. The clock only moves on its own when waiting for a
    timer; computations can model work time with ``advance()``. The host
    thread is the thread that creates the host; callbacks queued from other
    threads wait for its next ``run_*`` call.
    """

    def __init__(self, start_ms: float = 0.0, max_callbacks: int = 1_000_000) -> None:
        ensure_number(start_ms, name="start_ms")
        self._now = float(start_ms)
        self._max_callbacks = max_callbacks
        self._ready: deque[tuple[Callable[..., Any], tuple[Any, ...]]] = deque()
        self._timers: list[SimTimer] = []
        self._seq = 0
        self._lock = threading.Lock()
        self._thread_id = threading.get_ident()

    def now(self) -> float:
        return self._now

    def in_host_thread(self) -> bool:
        return threading.get_ident() == self._thread_id

    def advance(self, ms: float) -> float:
        """Move the clock forward without firing timers."""
        ensure_number(ms, name="ms")
        if ms < 0:
            raise ValueError(f"ms must be >= 0, got {ms}")
        self._now += ms
        return self._now

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        ensure_callable(callback, name="callback")
        with self._lock:
            self._ready.append((callback, args))

    call_soon_threadsafe = call_soon

    def call_later(self, delay_ms: float, callback: Callable[..., Any], *args: Any) -> SimTimer:
        ensure_number(delay_ms, name="delay_ms")
        ensure_callable(callback, name="callback")
        with self._lock:
            timer = SimTimer(self._now + max(delay_ms, 0.0), self._seq, callback, args)
            self._seq += 1
            heapq.heappush(self._timers, timer)
        return timer

    def as_future(self, awaitable: Awaitable[Any]) -> Any:
        raise TypeError(
            f"SimulationHost cannot wait on {type(awaitable).__name__}; "
            "yield a LazyPromise or use AsyncioHost"
        )

    @property
    def pending(self) -> int:
        """Number of ready callbacks plus live timers."""
        with self._lock:
            return len(self._ready) + sum(1 for t in self._timers if not t.cancelled)

    def run_once(self) -> bool:
        """Run a single callback, advancing to the next timer if needed.

        Returns:
            False when there is nothing left to run.
        """
        with self._lock:
            if self._ready:
                callback, args = self._ready.popleft()
            else:
                timer = self._pop_live_timer()
                if timer is None:
                    return False
                if timer.when > self._now:
                    self._now = timer.when
                callback, args = timer.callback, timer.args
        callback(*args)
        return True

    def run_until_idle(self) -> int:
        """Run callbacks and timers until none remain.

        Returns:
            Number of callbacks executed.

        Raises:
            SimulationHostError: when more than ``max_callbacks`` run.
        """
        count = 0
        while self.run_once():
            count += 1
            if count > self._max_callbacks:
                raise SimulationHostError(
                    f"Maximum callbacks exceeded ({self._max_callbacks}); "
                    "a threadlet may be looping without ever finishing"
                )
        logger.debug("Simulation idle after %d callbacks at t=%.3fms", count, self._now)
        return count

    def run_until(self, deadline_ms: float) -> int:
        """Run callbacks whose time is at or before ``deadline_ms``."""
        ensure_number(deadline_ms, name="deadline_ms")
        count = 0
        while True:
            with self._lock:
                has_ready = bool(self._ready)
                next_timer = self._peek_live_timer()
            if not has_ready and (next_timer is None or next_timer.when > deadline_ms):
                break
            self.run_once()
            count += 1
            if count > self._max_callbacks:
                raise SimulationHostError(f"Maximum callbacks exceeded ({self._max_callbacks})")
        self._now = max(self._now, float(deadline_ms))
        return count

    def _pop_live_timer(self) -> SimTimer | None:
        while self._timers:
            timer = heapq.heappop(self._timers)
            if not timer.cancelled:
                return timer
        return None

    def _peek_live_timer(self) -> SimTimer | None:
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)
        return self._timers[0] if self._timers else None


__all__ = [
    "AsyncioHost",
    "Host",
    "SimTimer",
    "SimulationHost",
    "TimerHandle",
]
