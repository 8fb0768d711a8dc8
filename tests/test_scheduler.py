from __future__ import annotations

import threading
import time

import pytest

from codemash.core.errors import InvariantViolation, UnknownSession
from codemash.core.models import Cancelled, Rejected, RunOutcome, RunStatus, SessionState, Success
from codemash.services.collector import ResultCollector
from codemash.services.scheduler import Scheduler

from conftest import unit


def eventually(predicate, timeout=5.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class FakeRunner:
    """Stands in for SessionRunner: no compiler, no child process."""

    def __init__(self, collector):
        self.collector = collector
        self.gate = threading.Event()
        self.gate.set()
        self.started = []
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, session):
        with self._lock:
            self.started.append(session.id)
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            name = session.units[0].name
            if name == "broken":
                raise InvariantViolation("driven into a bad state")
            if name == "crash":
                raise RuntimeError("kaboom")
            if name == "waits_for_cancel":
                session.cancel_event.wait(5)
                return self.collector.finalize(session)
            self.gate.wait(5)
            session.outcome = RunOutcome(RunStatus.FINISHED, 0, None, name, "", 0.01, value=name)
            return self.collector.finalize(session)
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def collector():
    return ResultCollector()


@pytest.fixture
def runner(collector):
    return FakeRunner(collector)


def make(runner, collector, **kw):
    return Scheduler(runner, collector, **kw)


def units(name):
    return [unit("def main():\n    pass\n", name=name)]


def test_concurrency_ceiling(runner, collector):
    sched = make(runner, collector, max_concurrent=2)
    runner.gate.clear()
    sessions = [sched.submit(units(f"u{i}"), 1000) for i in range(5)]
    assert eventually(lambda: len(runner.started) == 2)
    assert sched.active_count == 2
    assert sched.queued_count == 3
    runner.gate.set()
    verdicts = [s.wait(5) for s in sessions]
    assert [v.value for v in verdicts] == [f"u{i}" for i in range(5)]
    assert runner.peak <= 2
    sched.shutdown()


def test_fifo_admission(runner, collector):
    sched = make(runner, collector, max_concurrent=1)
    runner.gate.clear()
    sessions = [sched.submit(units(f"u{i}"), 1000) for i in range(6)]
    runner.gate.set()
    for s in sessions:
        s.wait(5)
    assert runner.started == [s.id for s in sessions]
    sched.shutdown()


def test_queue_full_is_rejected_immediately(runner, collector):
    sched = make(runner, collector, max_concurrent=1, max_queue=1)
    runner.gate.clear()
    first = sched.submit(units("a"), 1000)
    second = sched.submit(units("b"), 1000)
    third = sched.submit(units("c"), 1000)
    assert third.done
    assert third.verdict == Rejected(reason="queue full")
    assert third.state is SessionState.REJECTED
    assert second.state is SessionState.QUEUED
    runner.gate.set()
    assert isinstance(first.wait(5), Success)
    assert isinstance(second.wait(5), Success)
    sched.shutdown()


def test_cancel_queued_never_runs(runner, collector):
    sched = make(runner, collector, max_concurrent=1)
    runner.gate.clear()
    first = sched.submit(units("a"), 1000)
    queued = sched.submit(units("b"), 1000)
    assert sched.cancel(queued.id) is True
    assert isinstance(queued.verdict, Cancelled)
    assert sched.status(queued.id) is SessionState.CANCELLED
    runner.gate.set()
    first.wait(5)
    assert queued.id not in runner.started
    sched.shutdown()


def test_cancel_running_session(runner, collector):
    sched = make(runner, collector)
    s = sched.submit(units("waits_for_cancel"), 1000)
    assert eventually(lambda: s.id in runner.started)
    assert sched.cancel(s.id) is True
    assert s.verdict == Cancelled(reason="cancelled by caller")
    sched.shutdown()


def test_cancel_after_completion(runner, collector):
    sched = make(runner, collector)
    s = sched.submit(units("a"), 1000)
    s.wait(5)
    assert sched.cancel(s.id) is False
    assert isinstance(s.verdict, Success)
    sched.shutdown()


@pytest.mark.parametrize("name", ["broken", "crash"])
def test_failing_session_does_not_stop_the_scheduler(runner, collector, name):
    sched = make(runner, collector, max_concurrent=1)
    bad = sched.submit(units(name), 1000)
    good = sched.submit(units("fine"), 1000)
    verdict = bad.wait(5)
    assert isinstance(verdict, Rejected)
    assert verdict.reason.startswith("internal error")
    assert good.wait(5).value == "fine"
    assert eventually(lambda: sched.active_count == 0)
    sched.shutdown()


def test_unknown_session(runner, collector):
    sched = make(runner, collector)
    with pytest.raises(UnknownSession):
        sched.status("nope")
    with pytest.raises(KeyError):
        sched.await_result("nope")
    sched.shutdown()


def test_completed_sessions_are_evicted_oldest_first(runner, collector):
    sched = make(runner, collector, max_concurrent=1, max_retained=2)
    ids = [sched.submit(units(f"u{i}"), 1000).id for i in range(3)]
    for sid in ids:
        sched.await_result(sid, 5)

    def evicted():
        try:
            sched.get(ids[0])
        except UnknownSession:
            return True
        return False

    assert eventually(evicted)
    assert sched.status(ids[2]) is SessionState.COMPLETED
    sched.shutdown()


def test_shutdown_cancels_queued(runner, collector):
    sched = make(runner, collector, max_concurrent=1)
    runner.gate.clear()
    running = sched.submit(units("a"), 1000)
    queued = sched.submit(units("b"), 1000)
    assert eventually(lambda: running.id in runner.started)
    runner.gate.set()
    sched.shutdown(wait=True)
    assert isinstance(running.verdict, Success) or isinstance(running.verdict, Cancelled)
    assert queued.state in (SessionState.CANCELLED, SessionState.COMPLETED)
    late = sched.submit(units("c"), 1000)
    assert late.verdict == Rejected(reason="scheduler shut down")


def test_cancel_while_shutdown_finalizes_a_queued_session(runner, collector):
    sched = make(runner, collector, max_concurrent=1)
    runner.gate.clear()
    sched.submit(units("a"), 1000)
    queued = sched.submit(units("b"), 1000)
    # what shutdown does between clearing the queue and finalizing
    with sched._lock:
        sched._queue.clear()
    finalizer = threading.Timer(0.2, lambda: (queued.request_cancel("scheduler shut down"),
                                              collector.finalize(queued)))
    finalizer.start()
    assert sched.cancel(queued.id) is True
    assert isinstance(queued.verdict, Cancelled)
    runner.gate.set()
    sched.shutdown()
