"""
Multiprocessing executor: evaluations in isolated worker processes.

This is the safe default for native evaluators whose reentrancy is unknown:
each worker process holds its own copy of the evaluator (installed once by
the pool initializer), so no two calls ever share evaluator state. Timeouts
are hard; after a wave with a timeout the whole pool is terminated and
rebuilt so hung workers do not eat into later waves.
"""

from __future__ import annotations

import multiprocessing as mp
import threading
import time
from multiprocessing.pool import AsyncResult, Pool
from typing import List, Optional, Sequence

from nlsurrogate.evaluators import EvaluationResult, Evaluator
from nlsurrogate.executors.abstract import AbstractSampleExecutor, evaluate_safely, waves
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)

_WORKER_EVALUATOR: Optional[Evaluator] = None


def _init_worker(evaluator: Evaluator) -> None:
    global _WORKER_EVALUATOR
    _WORKER_EVALUATOR = evaluator


def _evaluate(inputs: Sequence[float], initial_guess: Sequence[float]) -> EvaluationResult:
    """
    Worker function: evaluate one sample with the process-local evaluator.
    """
    if _WORKER_EVALUATOR is None:
        return EvaluationResult(status="error", detail="worker has no evaluator")
    return evaluate_safely(_WORKER_EVALUATOR, inputs, initial_guess)


class ProcessExecutor(AbstractSampleExecutor):
    """
    Fan samples out across a spawn-context process pool.

    The evaluator must be picklable. The pool is created lazily on the first
    batch and reused until a timeout forces a rebuild or `close()` is called.
    """

    name: str = "processes"
    description: str = "Spawn-context process pool with hard per-sample timeouts."

    def __init__(self, evaluator: Evaluator, workers: Optional[int] = None) -> None:
        super().__init__(evaluator, workers or max(mp.cpu_count() - 1, 1))
        self._pool: Optional[Pool] = None

    def _get_pool(self) -> Pool:
        if self._pool is None:
            # Local context; the global start method stays untouched.
            context = mp.get_context("spawn")
            self._pool = context.Pool(
                processes=self.workers,
                initializer=_init_worker,
                initargs=(self.evaluator,),
            )
        return self._pool

    def _terminate_pool(self) -> None:
        if self._pool is not None:
            self._pool.terminate()
            self._pool.join()
            self._pool = None

    def run_batch(
        self,
        batch: Sequence[Sequence[float]],
        initial_guess: Sequence[float],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Optional[EvaluationResult]]:
        results: List[Optional[EvaluationResult]] = [None] * len(batch)
        guess = tuple(float(v) for v in initial_guess)
        for wave in waves(len(batch), self.workers):
            if cancel_event is not None and cancel_event.is_set():
                break
            pool = self._get_pool()
            pending: List[AsyncResult] = [
                pool.apply_async(_evaluate, (tuple(float(v) for v in batch[i]), guess))
                for i in wave
            ]
            timed_out = False
            deadline = time.monotonic() + timeout
            for i, handle in zip(wave, pending):
                try:
                    results[i] = handle.get(timeout=max(deadline - time.monotonic(), 0.0))
                except mp.TimeoutError:
                    timed_out = True
                    results[i] = EvaluationResult(
                        status="timeout", detail=f"no result within {timeout}s"
                    )
            if timed_out:
                log.warning(
                    "Evaluation timed out; restarting worker processes",
                    extra={"workers": self.workers},
                )
                self._terminate_pool()
        return results

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool.join()
            self._pool = None


__all__ = ["ProcessExecutor"]
