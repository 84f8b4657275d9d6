from __future__ import annotations

import multiprocessing as mp
import threading
import time
from typing import Any, Callable

import pytest

from nlsurrogate.errors import EvaluatorConvergenceFailure, EvaluatorTimeoutError
from nlsurrogate.evaluators import CallableEvaluator, EvaluationResult
from nlsurrogate.executors import (
    ProcessExecutor,
    SerialExecutor,
    ThreadedExecutor,
    available_executors,
    create_executor,
    evaluate_safely,
)
from nlsurrogate.executors import multiprocessing as process_module
from nlsurrogate.executors.abstract import waves

EXPECTED_PROCESSES = 2
WORKERS = 4
BATCH = [(float(i), 1.0) for i in range(6)]
GUESS = (0.5,)


def _echo(inputs, guess):
    return [inputs[0] * 10.0]


class _FakeAsyncResult:
    def __init__(self, value: Any = None, timeout: bool = False) -> None:
        self._value = value
        self._timeout = timeout

    def get(self, timeout: float) -> Any:
        del timeout
        if self._timeout:
            raise mp.TimeoutError()
        return self._value


class _FakePool:
    def __init__(self, processes, initializer, initargs, hang_on: Callable[[tuple], bool]) -> None:
        self.processes = processes
        self.terminated = False
        self.closed = False
        self._hang_on = hang_on
        initializer(*initargs)

    def apply_async(self, func, args):
        if self._hang_on(args):
            return _FakeAsyncResult(timeout=True)
        return _FakeAsyncResult(func(*args))

    def terminate(self) -> None:
        self.terminated = True

    def close(self) -> None:
        self.closed = True

    def join(self) -> None:
        return None


class _FakeContext:
    def __init__(self, hang_on: Callable[[tuple], bool] = lambda args: False) -> None:
        self.pools: list[_FakePool] = []
        self._hang_on = hang_on

    def Pool(self, processes=None, initializer=None, initargs=()):  # noqa: N802
        pool = _FakePool(processes, initializer, initargs, self._hang_on)
        self.pools.append(pool)
        return pool


@pytest.fixture
def fake_spawn(monkeypatch):
    contexts: list[_FakeContext] = []

    def install(hang_on: Callable[[tuple], bool] = lambda args: False) -> _FakeContext:
        context = _FakeContext(hang_on)
        contexts.append(context)

        def get_context(method: str) -> _FakeContext:
            assert method == "spawn"
            return context

        monkeypatch.setattr("nlsurrogate.executors.multiprocessing.mp.get_context", get_context)
        return context

    monkeypatch.setattr(process_module, "_WORKER_EVALUATOR", None)
    return install


def test_registry_lists_executors() -> None:
    assert available_executors() == ["processes", "serial", "threads"]
    assert isinstance(create_executor("serial", CallableEvaluator(_echo)), SerialExecutor)
    with pytest.raises(ValueError, match="Unknown executor"):
        create_executor("gpu", CallableEvaluator(_echo))


def test_waves_split_batch() -> None:
    assert waves(5, 2) == [range(0, 2), range(2, 4), range(4, 5)]
    assert waves(0, 3) == []


def test_evaluate_safely_maps_exceptions_to_statuses() -> None:
    def timeout(inputs, guess):
        raise EvaluatorTimeoutError("too slow")

    def crash(inputs, guess):
        raise ZeroDivisionError("bad input")

    class _Raising:
        reentrant = False

        def evaluate(self, inputs, guess):
            raise EvaluatorConvergenceFailure("stalled")

    assert evaluate_safely(CallableEvaluator(timeout), [1.0], GUESS).status == "timeout"
    assert evaluate_safely(_Raising(), [1.0], GUESS).status == "failed"
    crashed = evaluate_safely(CallableEvaluator(crash), [1.0], GUESS)
    assert crashed.status == "error"
    assert "ZeroDivisionError" in crashed.detail


def test_serial_executor_preserves_order() -> None:
    results = SerialExecutor(CallableEvaluator(_echo)).run_batch(BATCH, GUESS, timeout=5.0)

    assert [r.outputs for r in results] == [(i * 10.0,) for i in range(6)]


def test_serial_executor_soft_timeout() -> None:
    def slow(inputs, guess):
        time.sleep(0.05)
        return [1.0]

    results = SerialExecutor(CallableEvaluator(slow)).run_batch(BATCH[:1], GUESS, timeout=0.01)

    assert results[0].status == "timeout"


def test_serial_executor_leaves_cancelled_suffix_empty() -> None:
    cancel = threading.Event()

    def cancel_on_second(inputs, guess):
        if inputs[0] == 1.0:
            cancel.set()
        return [0.0]

    results = SerialExecutor(CallableEvaluator(cancel_on_second)).run_batch(
        BATCH, GUESS, timeout=5.0, cancel_event=cancel
    )

    assert [r is not None for r in results] == [True, True, False, False, False, False]


def test_threaded_executor_serializes_non_reentrant_evaluator() -> None:
    executor = ThreadedExecutor(CallableEvaluator(_echo, reentrant=False), WORKERS)

    assert executor.workers == 1


def test_threaded_executor_runs_reentrant_evaluator_in_parallel() -> None:
    active = 0
    peak = 0
    lock = threading.Lock()

    def track(inputs, guess):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return [inputs[0]]

    with ThreadedExecutor(CallableEvaluator(track, reentrant=True), WORKERS) as executor:
        results = executor.run_batch(BATCH, GUESS, timeout=5.0)

    assert [r.outputs for r in results] == [(float(i),) for i in range(6)]
    assert peak > 1


def test_threaded_executor_hard_timeout_replaces_pool() -> None:
    release = threading.Event()

    def hang_on_first(inputs, guess):
        if inputs[0] == 0.0:
            release.wait(2.0)
        return [inputs[0]]

    executor = ThreadedExecutor(CallableEvaluator(hang_on_first, reentrant=True), 2)
    try:
        results = executor.run_batch(BATCH[:4], GUESS, timeout=0.1)
    finally:
        release.set()
        executor.close()

    assert results[0].status == "timeout"
    assert all(r.converged for r in results[2:])


def test_threaded_executor_never_overlaps_non_reentrant_calls_after_timeout() -> None:
    release = threading.Event()
    active = 0
    peak = 0
    lock = threading.Lock()

    def hang_on_zero(inputs, guess):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        try:
            if inputs[0] == 0.0:
                release.wait(5.0)
            return [inputs[0]]
        finally:
            with lock:
                active -= 1

    executor = ThreadedExecutor(CallableEvaluator(hang_on_zero, reentrant=False), WORKERS)
    try:
        stalled = executor.run_batch([(0.0,), (1.0,), (2.0,)], GUESS, timeout=0.1)
        release.set()
        resumed = executor.run_batch([(3.0,)], GUESS, timeout=5.0)
    finally:
        release.set()
        executor.close()

    assert [r.status for r in stalled] == ["timeout", "timeout", "timeout"]
    assert resumed[0].outputs == (3.0,)
    assert peak == 1


def test_process_executor_uses_local_spawn_context(monkeypatch, fake_spawn) -> None:
    def fail_if_called(method: str, force: bool = False) -> None:
        del method, force
        raise AssertionError("set_start_method must not be called by the executor")

    monkeypatch.setattr("nlsurrogate.executors.multiprocessing.mp.set_start_method", fail_if_called)
    context = fake_spawn()

    with ProcessExecutor(CallableEvaluator(_echo), workers=EXPECTED_PROCESSES) as executor:
        results = executor.run_batch(BATCH, GUESS, timeout=5.0)

    assert len(context.pools) == 1
    assert context.pools[0].processes == EXPECTED_PROCESSES
    assert context.pools[0].closed is True
    assert [r.outputs for r in results] == [(i * 10.0,) for i in range(6)]


def test_process_executor_rebuilds_pool_after_timeout(fake_spawn) -> None:
    context = fake_spawn(hang_on=lambda args: args[0][0] == 1.0)

    with ProcessExecutor(CallableEvaluator(_echo), workers=EXPECTED_PROCESSES) as executor:
        results = executor.run_batch(BATCH, GUESS, timeout=0.5)

    assert results[1] == EvaluationResult(status="timeout", detail="no result within 0.5s")
    assert all(r.converged for i, r in enumerate(results) if i != 1)
    assert len(context.pools) == 2
    assert context.pools[0].terminated is True
    assert context.pools[1].terminated is False


def test_process_worker_without_evaluator_reports_error(fake_spawn) -> None:
    result = process_module._evaluate((1.0,), GUESS)

    assert result.status == "error"
