"""Tests for the deterministic simulation host."""

from __future__ import annotations

import threading

import pytest

from threadlet import Host, SimulationHost, SimulationHostError


class _Awaitable:
    def __await__(self):
        yield


class TestSimulationHostBasic:
    def test_is_a_host(self):
        assert isinstance(SimulationHost(), Host)

    def test_start_time(self):
        host = SimulationHost(start_ms=100.0)
        assert host.now() == 100.0

    def test_call_soon_runs_in_fifo_order(self, host):
        seen = []
        host.call_soon(seen.append, 1)
        host.call_soon(seen.append, 2)
        host.call_soon(seen.append, 3)

        assert host.run_until_idle() == 3
        assert seen == [1, 2, 3]

    def test_advance(self, host):
        host.advance(5)
        assert host.now() == 5.0

        with pytest.raises(ValueError):
            host.advance(-1)
        with pytest.raises(TypeError):
            host.advance("1")

    def test_as_future_is_unsupported(self, host):
        with pytest.raises(TypeError):
            host.as_future(_Awaitable())

    def test_host_thread_is_the_creating_thread(self, host):
        seen = []
        other = threading.Thread(target=lambda: seen.append(host.in_host_thread()))
        other.start()
        other.join()

        assert host.in_host_thread()
        assert seen == [False]

    def test_call_soon_from_another_thread_waits_for_next_run(self, host):
        seen = []
        other = threading.Thread(target=host.call_soon, args=(seen.append, "queued"))
        other.start()
        other.join()

        assert seen == []
        assert host.run_until_idle() == 1
        assert seen == ["queued"]


class TestSimulationHostTimers:
    def test_timers_fire_in_time_order_and_move_the_clock(self, host):
        seen = []
        host.call_later(10, lambda: seen.append(("late", host.now())))
        host.call_later(5, lambda: seen.append(("early", host.now())))
        host.call_later(5, lambda: seen.append(("early-2", host.now())))

        host.run_until_idle()

        assert seen == [("early", 5.0), ("early-2", 5.0), ("late", 10.0)]

    def test_ready_callbacks_run_before_timers(self, host):
        seen = []
        host.call_later(0, seen.append, "timer")
        host.call_soon(seen.append, "soon")

        host.run_until_idle()

        assert seen == ["soon", "timer"]

    def test_cancelled_timer_is_skipped(self, host):
        seen = []
        timer = host.call_later(5, seen.append, "cancelled")
        host.call_later(8, seen.append, "kept")
        timer.cancel()

        assert host.pending == 1
        host.run_until_idle()
        assert seen == ["kept"]
        assert host.now() == 8.0

    def test_run_until_deadline(self, host):
        seen = []
        host.call_later(5, seen.append, 5)
        host.call_later(15, seen.append, 15)

        host.run_until(10)

        assert seen == [5]
        assert host.now() == 10.0
        assert host.pending == 1

    def test_runaway_callbacks_raise(self):
        host = SimulationHost(max_callbacks=10)

        def again():
            host.call_soon(again)

        host.call_soon(again)
        with pytest.raises(SimulationHostError):
            host.run_until_idle()

    def test_callback_errors_propagate(self, host):
        def broken():
            raise RuntimeError("callback failed")

        host.call_soon(broken)
        with pytest.raises(RuntimeError, match="callback failed"):
            host.run_until_idle()
