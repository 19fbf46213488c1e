"""Tests for Scheduler dispatch, fairness and bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import FrozenInstanceError

import pytest
from frozendict import frozendict

from threadlet import (
    LazyPromise,
    Priority,
    Scheduler,
    SchedulerShutdownError,
    SimulationHost,
    Threadlet,
    ThreadletDeferred,
    ThreadletDemoted,
    ThreadletDispatched,
    ThreadletEnded,
    ThreadletQueued,
    ThreadletRequeued,
    ThreadletWaiting,
)

EAGER = {"timeslice": 0, "yield_interval": 0}


def steps(n, result=None):
    for i in range(n):
        yield i
    return result


def dispatched(events):
    return [e.name for e in events if isinstance(e, ThreadletDispatched)]


class TestDispatch:
    def test_single_threadlet_runs_to_completion(self, host, scheduler):
        worker = Threadlet(scheduler, "worker")
        promise = worker.run(steps, 3, "done")
        host.run_until_idle()

        assert promise.unwrap() == "done"
        assert scheduler.running is None
        assert scheduler.n_threads == 0

    def test_zero_timeslice_yields_after_every_step(self, host, scheduler, events):
        worker = Threadlet(scheduler, "worker", EAGER)
        worker.run(steps, 5, 42)
        host.run_until_idle()

        assert dispatched(events) == ["worker"] * 6

    def test_timeslice_keeps_stepping_until_exhausted(self, host, scheduler, events):
        def timed():
            for i in range(6):
                host.advance(1)
                yield i
            return "ok"

        worker = Threadlet(scheduler, "worker", {"timeslice": 3, "yield_interval": 0})
        promise = worker.run(timed)
        host.run_until_idle()

        assert promise.unwrap() == "ok"
        assert dispatched(events) == ["worker"] * 3

    def test_start_is_queued_at_native_priority(self, scheduler, events):
        Threadlet(scheduler, "low", {"priority": Priority.LOW}).run(steps, 1)

        queued = [e for e in events if isinstance(e, ThreadletQueued)]
        assert queued[0].priority == Priority.LOW


class TestPostYieldBuckets:
    def test_yield_inside_timeslice_requeues_on_run_queue(self, host, scheduler, events):
        worker = Threadlet(scheduler, "worker", {"timeslice": 10, "yield_interval": 20})
        promise = worker.run(steps, 2, "done")
        host.advance(3)
        scheduler.threadlet_yielding(worker)

        requeued = [e for e in events if isinstance(e, ThreadletRequeued)]
        assert [e.work_time for e in requeued] == [3.0]
        assert scheduler.running is worker
        assert scheduler.snapshot().dispatches == 2

        host.run_until_idle()
        assert promise.unwrap() == "done"
        assert scheduler.invariant_violations == 0
        assert not any(isinstance(e, (ThreadletDeferred, ThreadletDemoted)) for e in events)

    def test_requeue_promotes_one_queued_threadlet(self, scheduler):
        worker = Threadlet(scheduler, "worker", {"timeslice": 10, "yield_interval": 20})
        worker.run(steps, 1)
        Threadlet(scheduler, "other").run(steps, 1)
        scheduler.host.advance(3)
        scheduler.threadlet_yielding(worker)

        snapshot = scheduler.snapshot()
        assert snapshot.running == "worker"
        assert dict(snapshot.queue_depths) == {0: 0, 1: 1, 2: 0, 3: 0}

    def test_yield_inside_interval_is_deferred(self, host, scheduler, events):
        worker = Threadlet(scheduler, "worker", {"timeslice": 0, "yield_interval": 2})
        promise = worker.run(steps, 3, "late")

        host.run_once()
        snapshot = scheduler.snapshot()
        assert snapshot.deferred == 1
        assert snapshot.n_threads == 0

        host.run_until_idle()
        deferred = [e for e in events if isinstance(e, ThreadletDeferred)]
        assert [e.delay for e in deferred] == [2.0, 2.0, 2.0]
        assert host.now() == 6.0
        assert promise.unwrap() == "late"

    def test_deferred_gap_is_filled_by_other_threadlets(self, host, scheduler, events):
        slow = Threadlet(scheduler, "slow", {"timeslice": 0, "yield_interval": 5})
        fast = Threadlet(scheduler, "fast", EAGER)
        slow.run(steps, 1)
        fast.run(steps, 3)
        host.run_until_idle()

        assert dispatched(events) == ["slow", "fast", "fast", "fast", "fast", "slow"]

    def test_yield_after_interval_is_demoted(self, host, scheduler, events):
        worker = Threadlet(scheduler, "worker", {"priority": "low", **EAGER})
        worker.run(steps, 2)
        host.run_until_idle()

        demoted = [e for e in events if isinstance(e, ThreadletDemoted)]
        assert len(demoted) == 2
        assert all(e.priority == Priority.LOW for e in demoted)


class TestFairness:
    def test_high_runs_ahead_then_low_gets_a_turn(self, host, scheduler, events):
        high = Threadlet(scheduler, "A", {"priority": "high", **EAGER})
        low = Threadlet(scheduler, "B", {"priority": "low", **EAGER})
        settled = []
        high.run(steps, 5, 42).then(lambda v: settled.append(("A", v)))
        low.run(steps, 5, 42).then(lambda v: settled.append(("B", v)))
        host.run_until_idle()

        assert settled == [("A", 42), ("B", 42)]
        assert dispatched(events)[:8] == ["A", "A", "A", "A", "A", "B", "A", "B"]

    def test_high_and_low_settle_into_five_to_one(self, host, scheduler, events):
        high = Threadlet(scheduler, "high", {"priority": Priority.HIGH, **EAGER})
        low = Threadlet(scheduler, "low", {"priority": Priority.LOW, **EAGER})
        high.run(steps, 300)
        low.run(steps, 300)
        host.run_until_idle()

        window = dispatched(events)[:90]
        assert window.count("high") == 75
        assert window.count("low") == 15

    def test_each_priority_step_is_scheduled_more_often(self, host, scheduler, events):
        for name, priority in (("h", "high"), ("d", "default"), ("l", "low")):
            Threadlet(scheduler, name, {"priority": priority, **EAGER}).run(steps, 300)
        host.run_until_idle()

        order = dispatched(events)
        assert order[:12] == ["h", "h", "d", "h", "h", "l", "h", "d", "h", "d", "h", "l"]
        window = order[6:126]
        assert (window.count("h"), window.count("d"), window.count("l")) == (60, 40, 20)

    def test_low_priority_is_never_starved(self, host, scheduler, events):
        for name in ("h1", "h2"):
            Threadlet(scheduler, name, {"priority": "high", **EAGER}).run(steps, 100)
        Threadlet(scheduler, "low", {"priority": "low", **EAGER}).run(steps, 100)
        host.run_until_idle()

        order = dispatched(events)
        assert "low" in order[:12]
        gaps = [i for i, name in enumerate(order[:150]) if name == "low"]
        assert max(b - a for a, b in zip(gaps, gaps[1:])) <= 12

    def test_at_most_one_threadlet_running(self, host, scheduler):
        violations = []

        def check(event):
            snap = scheduler.snapshot()
            queued = sum(snap.queue_depths.values())
            if snap.n_threads != queued + (snap.running is not None):
                violations.append((event, snap))

        scheduler.add_observer(check)
        gate = LazyPromise(host=host)
        host.call_later(7, gate.resolve, "open")

        def waits():
            value = yield gate
            yield from steps(3)
            return value

        workers = [
            Threadlet(scheduler, "high", {"priority": "high", "timeslice": 0, "yield_interval": 1}),
            Threadlet(scheduler, "default", EAGER),
            Threadlet(scheduler, "low", {"priority": "low", **EAGER}),
        ]
        promises = [w.run(steps, 10, w.name) for w in workers]
        promises.append(workers[1].run(waits))
        host.run_until_idle()

        assert violations == []
        assert [p.unwrap() for p in promises] == ["high", "default", "low", "open"]


class TestWaiting:
    def test_waiting_threadlet_leaves_accounting(self, host, scheduler, events):
        gate = LazyPromise(host=host)

        def waits():
            value = yield gate
            return value * 2

        worker = Threadlet(scheduler, "worker")
        promise = worker.run(waits)
        host.run_until_idle()

        assert worker.is_waiting
        assert scheduler.n_threads == 0
        assert any(isinstance(e, ThreadletWaiting) for e in events)

        gate.resolve(21)
        host.run_until_idle()
        assert promise.unwrap() == 42


class TestDiagnostics:
    def test_invariant_violation_is_logged_not_raised(self, scheduler, caplog):
        stray = Threadlet(scheduler, "stray")

        with caplog.at_level(logging.ERROR, logger="threadlet.scheduler"):
            scheduler.threadlet_yielding(stray)

        assert scheduler.invariant_violations == 1
        assert scheduler.diagnostics[0].operation == "threadlet_yielding"
        assert "stray" in str(scheduler.diagnostics[0])
        assert "invariant" in caplog.text

    def test_failing_observer_is_skipped(self, host, scheduler, events, caplog):
        def broken(event):
            raise RuntimeError("observer failed")

        scheduler.add_observer(broken)
        worker = Threadlet(scheduler, "worker")
        with caplog.at_level(logging.ERROR, logger="threadlet.scheduler"):
            promise = worker.run(steps, 1, "ok")
            host.run_until_idle()

        assert promise.unwrap() == "ok"
        assert any(isinstance(e, ThreadletEnded) for e in events)
        assert "observer" in caplog.text

    def test_remove_observer(self, host, scheduler):
        seen = []
        scheduler.add_observer(seen.append)
        scheduler.remove_observer(seen.append)
        Threadlet(scheduler).run(steps, 1)
        host.run_until_idle()

        assert seen == []

    def test_snapshot_is_immutable(self, scheduler):
        Threadlet(scheduler, "worker").run(steps, 1)
        snapshot = scheduler.snapshot()

        assert snapshot.running == "worker"
        assert isinstance(snapshot.queue_depths, frozendict)
        assert set(snapshot.queue_depths) == {0, 1, 2, 3}
        assert snapshot.dispatches == 1
        with pytest.raises(FrozenInstanceError):
            snapshot.n_threads = 5

    def test_requires_host(self):
        with pytest.raises(TypeError):
            Scheduler(object())


class TestShutdown:
    def test_run_after_shutdown_raises(self, scheduler):
        worker = Threadlet(scheduler, "worker")
        scheduler.shutdown()

        assert scheduler.is_shut_down
        with pytest.raises(SchedulerShutdownError):
            worker.run(steps, 1)

    def test_shutdown_fails_scheduled_tasks(self, host, scheduler, unhandled):
        first = Threadlet(scheduler, "first")
        second = Threadlet(scheduler, "second")
        p1 = first.run(steps, 5)
        p2 = second.run(steps, 5)

        scheduler.shutdown()
        host.run_until_idle()

        assert isinstance(p1.value, SchedulerShutdownError)
        assert isinstance(p2.value, SchedulerShutdownError)
        assert first.has_failed and second.has_failed
        assert scheduler.snapshot().n_threads == 0
        assert len(unhandled) == 2

    def test_waiting_threadlet_fails_when_it_returns(self, host, scheduler, unhandled):
        gate = LazyPromise(host=host)

        def waits():
            yield gate

        worker = Threadlet(scheduler, "worker")
        promise = worker.run(waits)
        host.run_until_idle()
        scheduler.shutdown()
        gate.resolve(1)
        host.run_until_idle()

        assert isinstance(promise.value, SchedulerShutdownError)

    def test_context_manager_shuts_down(self):
        with Scheduler(SimulationHost()) as scheduler:
            assert not scheduler.is_shut_down
        assert scheduler.is_shut_down


class TestSharedThreadlets:
    def test_one_threadlet_per_priority(self, host, scheduler):
        high = scheduler.high_priority

        assert scheduler.high_priority is high
        assert scheduler.low_priority is not high
        promise = high.run(lambda: 5)
        host.run_until_idle()
        assert promise.unwrap() == 5

    def test_interface_is_frozen(self, scheduler):
        with pytest.raises(FrozenInstanceError):
            scheduler.default_priority.run = None

    def test_shared_threadlet_priority(self, scheduler):
        scheduler.shared_threadlet("low")
        assert scheduler._shared[Priority.LOW].controls.priority is Priority.LOW


class TestSleep:
    def test_ms_sleep(self, host, scheduler):
        def napper():
            value = yield scheduler.ms_sleep(10, "woke")
            return (value, host.now())

        promise = Threadlet(scheduler).run(napper)
        host.run_until_idle()

        assert promise.unwrap() == ("woke", 10.0)

    def test_sleep_in_seconds(self, host, scheduler):
        promise = scheduler.sleep(0.5)
        host.run_until_idle()

        assert promise.is_resolved
        assert host.now() == 500.0
