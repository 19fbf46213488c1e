"""Suspendable computations that a Threadlet can step.

A Threadable normalises plain functions, generator functions and generator
instances into one resumable step sequence. Inside a step sequence:

- ``yield gen`` / ``yield threadable`` calls a nested computation; its return
  value is sent back into the caller.
- ``return gen`` chains to a nested computation, replacing the current one.
- ``yield future`` / ``return future`` waits for the future to settle.
- ``yield value`` is a plain suspension point; ``value`` is sent straight back.

The same computation can run managed, on a Threadlet, or inline:

    @threadable
    def total(n):
        acc = 0
        for i in range(n):
            acc += yield i
        return acc

    worker.run(total, 3)               # managed
    await total(3)                     # inline, awaits any futures
    total.call_sync(3)                 # inline, no futures allowed
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
import types
from collections.abc import Callable, Generator
from typing import Any, Generic, TypeVar

from threadlet._validators import ensure_callable
from threadlet.errors import ThreadableSuspendError
from threadlet.promise import is_promisable

T = TypeVar("T")

StepGenerator = Generator[Any, Any, Any]


def _make_generator_function(func: Callable[..., Any]) -> Callable[..., StepGenerator]:
    @functools.wraps(func)
    def generator_function(*args: Any, **kwargs: Any) -> StepGenerator:
        return func(*args, **kwargs)
        yield  # pragma: no cover - marks this function as a generator

    return generator_function


def _constant_generator(value: Any, args: tuple[Any, ...]) -> StepGenerator:
    return value if not args else [value, *args]
    yield  # pragma: no cover - marks this function as a generator


class Threadable(Generic[T]):
    """A function normalised into a generator function.

    Calling a Threadable directly runs it inline: the call returns a coroutine
    that drives the step sequence to completion, awaiting any futures it
    yields or returns. Plain functions run when the coroutine is awaited.
    """

    def __init__(self, func: Callable[..., Any]) -> None:
        ensure_callable(func, name="func")
        if isinstance(func, Threadable):
            func = func.func
        self.func = func
        self.is_generator_function = inspect.isgeneratorfunction(func)
        self.generator_function: Callable[..., StepGenerator] = (
            func if self.is_generator_function else _make_generator_function(func)
        )
        functools.update_wrapper(self, func)

    def generator(self, *args: Any, **kwargs: Any) -> StepGenerator:
        """Instantiate the step sequence with arguments."""
        return self.generator_function(*args, **kwargs)

    def bind_generator(self, this: Any, *args: Any, **kwargs: Any) -> StepGenerator:
        """Instantiate the step sequence with ``this`` bound as first argument."""
        return types.MethodType(self.generator_function, this)(*args, **kwargs)

    def call_sync(self, *args: Any, **kwargs: Any) -> Any:
        """Run to completion synchronously; futures are not allowed."""
        return drain(self.generator(*args, **kwargs))

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return drive_inline(self.generator(*args, **kwargs))

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        if instance is None:
            return self
        return Threadable(types.MethodType(self.func, instance))

    def __repr__(self) -> str:
        return f"Threadable({getattr(self.func, '__qualname__', self.func)!r})"


def threadable(func: Callable[..., Any]) -> Threadable[Any]:
    """Decorator form of ``Threadable``; returns Threadables unchanged."""
    if isinstance(func, Threadable):
        return func
    return Threadable(func)


def as_generator(value: Any, *args: Any, **kwargs: Any) -> StepGenerator:
    """Turn any value into a step sequence.

    Generators are returned unchanged (arguments cannot be injected), callables
    are invoked with the arguments, and any other value becomes a sequence
    that returns it, or ``[value, *args]`` when arguments are supplied.
    """
    if inspect.isgenerator(value):
        return value
    if isinstance(value, Threadable):
        return value.generator(*args, **kwargs)
    if inspect.isgeneratorfunction(value):
        return value(*args, **kwargs)
    if callable(value):
        return _make_generator_function(value)(*args, **kwargs)
    return _constant_generator(value, args)


def bind_as_generator(this: Any, value: Any, *args: Any, **kwargs: Any) -> StepGenerator:
    """As ``as_generator`` but binds ``this`` to callables.

    ``value`` may be the name of a method on ``this``.
    """
    if isinstance(value, str):
        method = getattr(this, value, None)
        if not callable(method):
            raise TypeError(f"{type(this).__name__}.{value} is not a method")
        return as_generator(method, *args, **kwargs)
    if isinstance(value, Threadable):
        return value.bind_generator(this, *args, **kwargs)
    if callable(value) and not inspect.isgenerator(value):
        return as_generator(types.MethodType(value, this), *args, **kwargs)
    return as_generator(value, *args, **kwargs)


def is_nested(value: Any) -> bool:
    """True for values that are stepped as nested computations."""
    return inspect.isgenerator(value) or isinstance(value, Threadable)


def nested_generator(value: Any) -> StepGenerator:
    if isinstance(value, Threadable):
        return value.generator()
    return value


def _step(gen: StepGenerator, value: Any) -> tuple[Any, bool]:
    try:
        return gen.send(value), False
    except StopIteration as stop:
        return stop.value, True


def drain(gen: StepGenerator) -> Any:
    """Drive ``gen`` to completion synchronously.

    Raises:
        ThreadableSuspendError: if the computation yields or returns a future.
    """
    stack: list[StepGenerator] = []
    step = gen
    value: Any = None
    while True:
        value, done = _step(step, value)
        if is_nested(value):
            if not done:
                stack.append(step)
            step, value = nested_generator(value), None
            continue
        if is_promisable(value):
            if inspect.iscoroutine(value):
                value.close()
            raise ThreadableSuspendError(value)
        if done:
            if not stack:
                return value
            step = stack.pop()


async def drive_inline(gen: StepGenerator) -> Any:
    """Drive ``gen`` to completion, awaiting every future it produces."""
    stack: list[StepGenerator] = []
    step = gen
    value: Any = None
    while True:
        value, done = _step(step, value)
        if is_nested(value):
            if not done:
                stack.append(step)
            step, value = nested_generator(value), None
            continue
        if is_promisable(value):
            if isinstance(value, concurrent.futures.Future):
                value = asyncio.wrap_future(value)
            value = await value
        if done:
            if not stack:
                return value
            step = stack.pop()


def run_inline(value: Any, *args: Any, **kwargs: Any) -> Any:
    """Coroutine running any value inline with ``as_generator`` semantics."""
    return drive_inline(as_generator(value, *args, **kwargs))


__all__ = [
    "StepGenerator",
    "Threadable",
    "as_generator",
    "bind_as_generator",
    "drain",
    "drive_inline",
    "is_nested",
    "nested_generator",
    "run_inline",
    "threadable",
]
