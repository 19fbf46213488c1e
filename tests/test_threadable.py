"""Tests for the step-sequence adapter and the synchronous driver."""

from __future__ import annotations

import inspect

import pytest

from threadlet import (
    LazyPromise,
    ThreadableSuspendError,
    Threadable,
    as_generator,
    bind_as_generator,
    drain,
    threadable,
)


def total(n):
    acc = 0
    for i in range(n):
        acc += yield i
    return acc


def double(x):
    yield
    return x * 2


class Counter:
    def __init__(self) -> None:
        self.count = 0

    def bump(self, n):
        self.count += n
        return self.count

    def bump_twice(self, n):
        yield self.bump(n)
        yield self.bump(n)
        return self.count

    @threadable
    def tracked(self, n):
        self.count = yield n
        return self.count


class TestThreadable:
    def test_plain_function(self):
        add_one = Threadable(lambda x: x + 1)

        assert not add_one.is_generator_function
        assert add_one.call_sync(1) == 2
        assert inspect.isgenerator(add_one.generator(1))

    def test_generator_function(self):
        summed = Threadable(total)

        assert summed.is_generator_function
        assert summed.generator_function is total
        assert summed.call_sync(4) == 6

    def test_generator_function_call_returns_coroutine(self):
        coro = Threadable(total)(3)
        try:
            assert inspect.iscoroutine(coro)
        finally:
            coro.close()

    def test_plain_function_call_returns_coroutine(self):
        calls = []
        coro = Threadable(calls.append)("x")
        try:
            assert inspect.iscoroutine(coro)
            assert calls == []
        finally:
            coro.close()

    def test_wrapping_is_idempotent(self):
        wrapped = Threadable(total)

        assert Threadable(wrapped).func is total
        assert threadable(wrapped) is wrapped

    def test_requires_callable(self):
        with pytest.raises(TypeError):
            Threadable(42)

    def test_bound_method_descriptor(self):
        counter = Counter()

        assert counter.tracked.call_sync(5) == 5
        assert counter.count == 5

    def test_bind_generator(self):
        counter = Counter()
        gen = Threadable(Counter.bump_twice).bind_generator(counter, 3)

        assert drain(gen) == 6


class TestAsGenerator:
    def test_generator_instance_is_returned_unchanged(self):
        gen = total(2)
        assert as_generator(gen) is gen

    def test_constant_value(self):
        assert drain(as_generator(42)) == 42

    def test_constant_value_with_arguments(self):
        assert drain(as_generator("op", 1, 2)) == ["op", 1, 2]

    def test_plain_callable_is_deferred_until_first_step(self):
        calls = []
        gen = as_generator(calls.append, "x")

        assert calls == []
        drain(gen)
        assert calls == ["x"]

    def test_bind_method_name(self):
        counter = Counter()

        assert drain(bind_as_generator(counter, "bump", 2)) == 2
        assert drain(bind_as_generator(counter, "bump_twice", 1)) == 4

    def test_bind_function(self):
        def read(self, extra):
            return self.count + extra

        counter = Counter()
        counter.count = 10
        assert drain(bind_as_generator(counter, read, 5)) == 15

    def test_bind_missing_method(self):
        with pytest.raises(TypeError):
            bind_as_generator(Counter(), "missing")


class TestDrain:
    def test_nested_call_returns_value_to_caller(self):
        def parent():
            a = yield double(3)
            b = yield double(4)
            return a + b

        assert drain(parent()) == 14

    def test_returned_generator_is_chained(self):
        def first(x):
            return double(x + 1)
            yield

        assert drain(first(1)) == 4

    def test_nested_threadable(self):
        nested = threadable(lambda: "inner")

        def parent():
            value = yield nested
            return value.upper()

        assert drain(parent()) == "INNER"

    def test_plain_yields_are_sent_back(self):
        assert drain(total(5)) == 10

    def test_exception_propagates(self):
        def failing():
            yield 1
            raise ValueError("broken")

        with pytest.raises(ValueError, match="broken"):
            drain(failing())

    def test_future_raises_suspend_error(self):
        promise = LazyPromise()

        def waits():
            yield promise

        with pytest.raises(ThreadableSuspendError) as exc_info:
            drain(waits())
        assert exc_info.value.value is promise
