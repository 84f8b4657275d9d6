"""
Thread-pool executor for evaluators that declare themselves reentrant.

Thread safety of an externally supplied evaluator is never assumed: an
evaluator without `reentrant = True` is run on a single worker thread, which
still gives a hard wall-clock timeout per sample without parallel calls.
After such an evaluator times out, no further call is issued until the hung
call returns.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait
from typing import List, Optional, Sequence

from nlsurrogate.evaluators import EvaluationResult, Evaluator
from nlsurrogate.executors.abstract import AbstractSampleExecutor, evaluate_safely, waves
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)


class ThreadedExecutor(AbstractSampleExecutor):
    """
    Fan samples out over a ThreadPoolExecutor, one wave of `workers` at a time.

    A timed-out thread cannot be stopped. For a reentrant evaluator the pool
    is abandoned (not joined) and replaced so later waves get fresh workers.
    A non-reentrant evaluator keeps its single worker; inputs are reported as
    timed out while the hung call is still running.
    """

    name: str = "threads"
    description: str = "ThreadPool evaluation; parallel only for reentrant evaluators."

    def __init__(self, evaluator: Evaluator, workers: int = 1) -> None:
        super().__init__(evaluator, workers)
        self.reentrant = bool(getattr(evaluator, "reentrant", False))
        if workers > 1 and not self.reentrant:
            log.warning(
                "Evaluator is not reentrant; serializing thread executor",
                extra={"requested_workers": workers},
            )
            self.workers = 1
        self._pool: Optional[ThreadPoolExecutor] = None
        self._hung: Optional[Future[EvaluationResult]] = None

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="nls-eval"
            )
        return self._pool

    def _abandon_pool(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None

    def _hung_call_returned(self, timeout: float) -> bool:
        if self._hung is None:
            return True
        wait([self._hung], timeout=timeout)
        if not self._hung.done():
            return False
        log.info("Timed-out evaluation returned; resuming calls")
        self._hung = None
        return True

    def run_batch(
        self,
        batch: Sequence[Sequence[float]],
        initial_guess: Sequence[float],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Optional[EvaluationResult]]:
        results: List[Optional[EvaluationResult]] = [None] * len(batch)
        for wave in waves(len(batch), self.workers):
            if cancel_event is not None and cancel_event.is_set():
                break
            if not self._hung_call_returned(timeout):
                for i in range(wave.start, len(batch)):
                    results[i] = EvaluationResult(
                        status="timeout", detail="evaluator still busy with a timed-out call"
                    )
                break
            pool = self._get_pool()
            futures: List[Future[EvaluationResult]] = [
                pool.submit(evaluate_safely, self.evaluator, batch[i], initial_guess) for i in wave
            ]
            timed_out = False
            deadline = time.monotonic() + timeout
            for i, future in zip(wave, futures):
                try:
                    results[i] = future.result(timeout=max(deadline - time.monotonic(), 0.0))
                except FutureTimeoutError:
                    timed_out = True
                    results[i] = EvaluationResult(
                        status="timeout", detail=f"no result within {timeout}s"
                    )
            if not timed_out:
                continue
            if self.reentrant:
                log.warning("Evaluation timed out; replacing worker threads")
                self._abandon_pool()
            else:
                log.warning("Evaluation timed out; holding calls until it returns")
                self._hung = next((f for f in futures if not f.done()), None)
        return results

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=self._hung is None, cancel_futures=True)
            self._pool = None
        self._hung = None


__all__ = ["ThreadedExecutor"]
