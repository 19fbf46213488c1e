"""Promise-style completion handles that keep a single continuation chain.

A ``SealedContract`` is a one-shot settlement cell. Continuations attached with
``then``/``catch``/``finally_`` all extend the same linear chain owned by the
contract, so attaching a handler never forks a second chain and every handler
fires exactly once, in attachment order, whether it was attached before or
after settlement.

Variants:
    LazyPromise   - settled from outside via ``resolve``/``reject``.
    ProxyPromise  - settled by an executor run at construction.
    AsyncPromise  - settled by an executor run on the next host callback.

A ``Contract`` records handlers that are applied to every promise it seals.
Threadlets use one to attach the same handlers to every task they run.

Handler delivery goes through ``host.call_soon`` when the promise has a host,
which keeps settlement free of re-entrant surprises. Without a host, handlers
run synchronously.

Example:
    promise = LazyPromise(host=host)
    promise.then(lambda v: v * 2).catch(lambda e: 0)
    promise.resolve(21)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
import logging
from collections import deque
from collections.abc import Callable, Generator, Iterable
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from loguru import logger as loguru_logger

from threadlet._validators import (
    ensure_callable,
    ensure_exception,
    ensure_optional_callable,
)
from threadlet.errors import PromisePendingError

if TYPE_CHECKING:
    from threadlet.hosts import Host

T = TypeVar("T")

logger = logging.getLogger(__name__)
report_logger = loguru_logger.bind(component="threadlet.promise")

CatchHandler = Callable[[BaseException, "str | None"], Any]


class Settlement(Enum):
    PENDING = auto()
    RESOLVED = auto()
    REJECTED = auto()


def default_catch_handler(error: BaseException, owner_name: str | None = None) -> None:
    """Report a rejection nobody handled."""
    where = f" in {owner_name}" if owner_name else ""
    report_logger.opt(exception=error).warning(
        "Unhandled rejection{}: {}: {}", where, type(error).__name__, error
    )


_catch_handler: CatchHandler = default_catch_handler


def set_default_catch_handler(handler: CatchHandler) -> CatchHandler:
    """Replace the handler used for unhandled rejections.

    Returns:
        The previously installed handler, so callers can restore it.
    """
    global _catch_handler
    ensure_callable(handler, name="handler")
    previous = _catch_handler
    _catch_handler = handler
    return previous


def get_default_catch_handler() -> CatchHandler:
    return _catch_handler


@dataclass
class _Link:
    on_fulfilled: Callable[[Any], Any] | None = None
    on_rejected: Callable[[BaseException], Any] | None = None
    on_finally: Callable[[], Any] | None = None


class Promises:
    """Records ``then``/``catch``/``finally_`` requests for later application."""

    def __init__(self) -> None:
        self.handlers: list[tuple[str, tuple[Any, ...]]] = []

    def then(
        self,
        on_fulfilled: Callable[[Any], Any],
        on_rejected: Callable[[BaseException], Any] | None = None,
    ) -> Promises:
        ensure_callable(on_fulfilled, name="on_fulfilled")
        ensure_optional_callable(on_rejected, name="on_rejected")
        self.handlers.append(("then", (on_fulfilled, on_rejected)))
        return self

    def catch(self, on_rejected: Callable[[BaseException], Any]) -> Promises:
        ensure_callable(on_rejected, name="on_rejected")
        self.handlers.append(("catch", (on_rejected,)))
        return self

    def finally_(self, on_finally: Callable[[], Any]) -> Promises:
        ensure_callable(on_finally, name="on_finally")
        self.handlers.append(("finally_", (on_finally,)))
        return self

    def apply(self, promise: SealedContract[T]) -> SealedContract[T]:
        for method, args in self.handlers:
            getattr(promise, method)(*args)
        return promise

    def clear(self) -> Promises:
        self.handlers.clear()
        return self

    def apply_and_clear(self, promise: SealedContract[T]) -> SealedContract[T]:
        self.apply(promise)
        self.clear()
        return promise

    def __len__(self) -> int:
        return len(self.handlers)


class Contract:
    """Handlers to be applied to every promise sealed from this contract.

    Attributes:
        when_sealed: applied as soon as a promise is sealed.
        when_resolved: applied when a sealed promise resolves.
        when_rejected: applied when a sealed promise rejects.
        when_settled: applied after either of the above.
        on_finally: appended last on every settlement.
    """

    def __init__(self, owner: Any = None, on_finally: Callable[[], Any] | None = None) -> None:
        ensure_optional_callable(on_finally, name="on_finally")
        self.owner = owner
        self.when_sealed = Promises()
        self.when_resolved = Promises()
        self.when_rejected = Promises()
        self.when_settled = Promises()
        self.on_finally = on_finally

    def seal(self, host: Host | None = None) -> LazyPromise[Any]:
        return LazyPromise(contract=self, host=host)

    def seal_with(
        self,
        executor: Callable[[Callable[[Any], None], Callable[[BaseException], None]], Any],
        host: Host | None = None,
    ) -> ProxyPromise[Any]:
        return ProxyPromise(executor, contract=self, host=host)

    def async_seal(
        self,
        executor: Callable[[Callable[[Any], None], Callable[[BaseException], None]], Any],
        host: Host | None = None,
    ) -> AsyncPromise[Any]:
        return AsyncPromise(executor, contract=self, host=host)


class SealedContract(Generic[T]):
    """One-shot settlement cell with a single ordered continuation chain."""

    def __init__(self, contract: Contract | None = None, host: Host | None = None) -> None:
        self.contract = contract
        self.host = host
        self._settlement = Settlement.PENDING
        self._value: Any = None
        self._locked = False
        self._chain_state = Settlement.PENDING
        self._chain_value: Any = None
        self._links: deque[_Link] = deque()
        self._flush_scheduled = False
        self._adopting = False
        self._rejection_observed = False
        self._rejection_reported = False
        if contract is not None:
            contract.when_sealed.apply(self)

    # ------------------------------------------------------------------
    # Settlement state
    # ------------------------------------------------------------------

    @property
    def is_settled(self) -> bool:
        return self._settlement is not Settlement.PENDING

    @property
    def is_resolved(self) -> bool:
        return self._settlement is Settlement.RESOLVED

    @property
    def is_rejected(self) -> bool:
        return self._settlement is Settlement.REJECTED

    @property
    def value(self) -> Any:
        """The settled value or rejection error; ``None`` while pending."""
        return self._value

    @property
    def owner(self) -> Any:
        return self.contract.owner if self.contract is not None else None

    def unwrap(self) -> T:
        """Return the resolved value or raise the rejection."""
        if self._settlement is Settlement.PENDING:
            raise PromisePendingError(f"{self!r} has not settled")
        if self._settlement is Settlement.RESOLVED:
            return self._value
        raise self._value

    # ------------------------------------------------------------------
    # Continuations
    # ------------------------------------------------------------------

    def then(
        self,
        on_fulfilled: Callable[[Any], Any],
        on_rejected: Callable[[BaseException], Any] | None = None,
    ) -> SealedContract[T]:
        ensure_callable(on_fulfilled, name="on_fulfilled")
        ensure_optional_callable(on_rejected, name="on_rejected")
        return self._append(_Link(on_fulfilled=on_fulfilled, on_rejected=on_rejected))

    def catch(self, on_rejected: Callable[[BaseException], Any]) -> SealedContract[T]:
        ensure_callable(on_rejected, name="on_rejected")
        return self._append(_Link(on_rejected=on_rejected))

    def finally_(self, on_finally: Callable[[], Any]) -> SealedContract[T]:
        ensure_callable(on_finally, name="on_finally")
        return self._append(_Link(on_finally=on_finally))

    def __await__(self) -> Generator[Any, None, T]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def fulfilled(value: Any) -> Any:
            if not future.done():
                future.set_result(value)
            return value

        def rejected(error: BaseException) -> Any:
            if not future.done():
                future.set_exception(error)
            raise error

        self.then(fulfilled, rejected)
        return (yield from future.__await__())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, value: Any = None) -> None:
        if self._locked:
            logger.debug("Ignoring resolve of already settled %r", self)
            return
        if value is not self and is_promisable(value):
            self._locked = True
            on_settlement(
                value,
                lambda v: self._settle(Settlement.RESOLVED, v),
                lambda e: self._settle(Settlement.REJECTED, e),
                self.host,
            )
            return
        self._settle(Settlement.RESOLVED, value)

    def _reject(self, error: BaseException) -> None:
        ensure_exception(error, name="error")
        if self._locked:
            logger.debug("Ignoring reject of already settled %r", self)
            return
        self._settle(Settlement.REJECTED, error)

    def _settle(self, state: Settlement, value: Any) -> None:
        if self._settlement is not Settlement.PENDING:
            return
        self._locked = True
        self._settlement = state
        self._value = value
        self._chain_state = state
        self._chain_value = value
        contract = self.contract
        if contract is not None:
            if state is Settlement.RESOLVED:
                contract.when_resolved.apply(self)
            else:
                contract.when_rejected.apply(self)
            contract.when_settled.apply(self)
            if contract.on_finally is not None:
                self.finally_(contract.on_finally)
        self._schedule_flush()

    def _append(self, link: _Link) -> SealedContract[T]:
        self._links.append(link)
        if self._chain_state is not Settlement.PENDING:
            self._schedule_flush()
        return self

    def _schedule_flush(self) -> None:
        if self._flush_scheduled or self._adopting:
            return
        self._flush_scheduled = True
        if self.host is None:
            self._flush()
        else:
            self.host.call_soon(self._flush)

    def _flush(self) -> None:
        try:
            while self._links and not self._adopting:
                self._run_link(self._links.popleft())
        finally:
            self._flush_scheduled = False
        if (
            not self._adopting
            and self._chain_state is Settlement.REJECTED
            and not self._rejection_observed
            and not self._rejection_reported
        ):
            self._rejection_reported = True
            _catch_handler(self._chain_value, self._owner_name())

    def _run_link(self, link: _Link) -> None:
        state, value = self._chain_state, self._chain_value
        try:
            if link.on_finally is not None:
                result = link.on_finally()
                if is_promisable(result) and result is not self:
                    self._adopt(result, passthrough=(state, value))
                return
            if state is Settlement.RESOLVED:
                if link.on_fulfilled is None:
                    return
                result = link.on_fulfilled(value)
            else:
                if link.on_rejected is None:
                    return
                self._rejection_observed = True
                result = link.on_rejected(value)
        except BaseException as exc:
            # re-raising the incoming rejection passes it down the chain
            if exc is not value:
                if not isinstance(exc, Exception):
                    raise
                self._rejection_observed = False
                self._rejection_reported = False
            self._chain_state, self._chain_value = Settlement.REJECTED, exc
            return
        if is_promisable(result) and result is not self:
            self._adopt(result)
            return
        self._chain_state, self._chain_value = Settlement.RESOLVED, result

    def _adopt(self, value: Any, passthrough: tuple[Settlement, Any] | None = None) -> None:
        self._adopting = True

        def settled(state: Settlement, result: Any) -> None:
            self._adopting = False
            if passthrough is not None and state is Settlement.RESOLVED:
                state, result = passthrough
            if state is Settlement.REJECTED and result is not self._chain_value:
                self._rejection_observed = False
                self._rejection_reported = False
            self._chain_state, self._chain_value = state, result
            self._schedule_flush()

        on_settlement(
            value,
            lambda v: settled(Settlement.RESOLVED, v),
            lambda e: settled(Settlement.REJECTED, e),
            self.host,
        )

    def _owner_name(self) -> str | None:
        owner = self.owner
        if owner is None:
            return None
        return getattr(owner, "name", None) or repr(owner)

    def __repr__(self) -> str:
        state = self._settlement.name.lower()
        if self._settlement is Settlement.PENDING:
            return f"<{type(self).__name__} {state}>"
        return f"<{type(self).__name__} {state} value={self._value!r}>"


class LazyPromise(SealedContract[T]):
    """A promise settled by whoever holds it.

    ``resolve`` and ``reject`` may be called from any thread; settlement always
    happens on the host thread.
    """

    def resolve(self, value: Any = None) -> LazyPromise[T]:
        if self._off_host_thread():
            self.host.call_soon_threadsafe(self._resolve, value)
        else:
            self._resolve(value)
        return self

    def reject(self, error: BaseException) -> LazyPromise[T]:
        ensure_exception(error, name="error")
        if self._off_host_thread():
            self.host.call_soon_threadsafe(self._reject, error)
        else:
            self._reject(error)
        return self

    def _off_host_thread(self) -> bool:
        return self.host is not None and not self.host.in_host_thread()

    @classmethod
    def resolved(cls, value: Any = None, host: Host | None = None) -> LazyPromise[Any]:
        return cls(host=host).resolve(value)

    @classmethod
    def rejected(cls, error: BaseException, host: Host | None = None) -> LazyPromise[Any]:
        return cls(host=host).reject(error)


class ProxyPromise(SealedContract[T]):
    """A promise settled by an executor that runs at construction."""

    def __init__(
        self,
        executor: Callable[[Callable[[Any], None], Callable[[BaseException], None]], Any],
        contract: Contract | None = None,
        host: Host | None = None,
    ) -> None:
        ensure_callable(executor, name="executor")
        super().__init__(contract=contract, host=host)
        self._run_executor(executor)

    def _run_executor(
        self,
        executor: Callable[[Callable[[Any], None], Callable[[BaseException], None]], Any],
    ) -> None:
        try:
            executor(self._resolve, self._reject)
        except Exception as exc:
            self._reject(exc)


class AsyncPromise(ProxyPromise[T]):
    """A promise whose executor runs on the next host callback."""

    def __init__(
        self,
        executor: Callable[[Callable[[Any], None], Callable[[BaseException], None]], Any],
        contract: Contract | None = None,
        host: Host | None = None,
    ) -> None:
        if host is None:
            raise TypeError("AsyncPromise requires a host to defer its executor")
        ensure_callable(executor, name="executor")
        SealedContract.__init__(self, contract=contract, host=host)
        host.call_soon(self._run_executor, executor)


def is_promisable(value: Any) -> bool:
    """True for values a threadlet waits on instead of sending back."""
    if isinstance(value, SealedContract):
        return True
    if asyncio.isfuture(value) or isinstance(value, concurrent.futures.Future):
        return True
    return inspect.isawaitable(value)


def on_settlement(
    value: Any,
    on_fulfilled: Callable[[Any], Any],
    on_rejected: Callable[[BaseException], Any],
    host: Host | None = None,
) -> None:
    """Call one of the callbacks once ``value`` settles.

    Contracts are observed through a pass-through link so their chain is
    neither split nor altered. ``concurrent.futures`` completions are handed
    back to the host thread with ``call_soon_threadsafe``.
    """
    if isinstance(value, SealedContract):

        def passed(result: Any) -> Any:
            on_fulfilled(result)
            return result

        def failed(error: BaseException) -> Any:
            on_rejected(error)
            raise error

        value.then(passed, failed)
        return

    if isinstance(value, concurrent.futures.Future):

        def completed(future: concurrent.futures.Future[Any]) -> None:
            if host is None:
                _deliver_future(future, on_fulfilled, on_rejected)
            else:
                host.call_soon_threadsafe(_deliver_future, future, on_fulfilled, on_rejected)

        value.add_done_callback(completed)
        return

    if asyncio.isfuture(value):
        value.add_done_callback(lambda future: _deliver_future(future, on_fulfilled, on_rejected))
        return

    if inspect.isawaitable(value):
        if host is None:
            raise TypeError(f"A host is required to wait on {type(value).__name__}")
        on_settlement(host.as_future(value), on_fulfilled, on_rejected, host)
        return

    raise TypeError(f"Cannot wait on {type(value).__name__}")


def gather(items: Iterable[Any], host: Host | None = None) -> LazyPromise[list[Any]]:
    """Promise of every result, in order; rejects with the first rejection.

    Plain values are taken as already resolved.
    """
    items = list(items)
    result: LazyPromise[list[Any]] = LazyPromise(host=host)
    if not items:
        return result.resolve([])
    values: list[Any] = [None] * len(items)
    remaining = len(items)

    def fulfilled(index: int, value: Any) -> None:
        nonlocal remaining
        values[index] = value
        remaining -= 1
        if remaining == 0:
            result.resolve(values)

    for index, item in enumerate(items):
        if is_promisable(item):
            on_settlement(item, functools.partial(fulfilled, index), result.reject, host)
        else:
            fulfilled(index, item)
    return result


def _deliver_future(
    future: Any,
    on_fulfilled: Callable[[Any], Any],
    on_rejected: Callable[[BaseException], Any],
) -> None:
    if future.cancelled():
        if isinstance(future, concurrent.futures.Future):
            on_rejected(concurrent.futures.CancelledError())
        else:
            on_rejected(asyncio.CancelledError())
        return
    error = future.exception()
    if error is not None:
        on_rejected(error)
    else:
        on_fulfilled(future.result())


__all__ = [
    "AsyncPromise",
    "CatchHandler",
    "Contract",
    "LazyPromise",
    "Promises",
    "ProxyPromise",
    "SealedContract",
    "Settlement",
    "default_catch_handler",
    "gather",
    "get_default_catch_handler",
    "is_promisable",
    "on_settlement",
    "set_default_catch_handler",
]
