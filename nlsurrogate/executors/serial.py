"""
Serial (baseline) executor: one evaluation at a time in the calling thread.

The timeout is soft: an evaluation cannot be interrupted in-process, so a
result that took longer than the budget is discarded and counted as a
timeout. Use the `processes` executor when evaluators may hang.
"""

from __future__ import annotations

import threading
import time
from typing import List, Optional, Sequence

from nlsurrogate.evaluators import EvaluationResult
from nlsurrogate.executors.abstract import AbstractSampleExecutor, evaluate_safely


class SerialExecutor(AbstractSampleExecutor):
    """
    Evaluate samples sequentially in the current thread.
    """

    name: str = "serial"
    description: str = "In-process sequential evaluation (soft timeout)."

    def run_batch(
        self,
        batch: Sequence[Sequence[float]],
        initial_guess: Sequence[float],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Optional[EvaluationResult]]:
        results: List[Optional[EvaluationResult]] = [None] * len(batch)
        for i, inputs in enumerate(batch):
            if cancel_event is not None and cancel_event.is_set():
                break
            start = time.perf_counter()
            result = evaluate_safely(self.evaluator, inputs, initial_guess)
            elapsed = time.perf_counter() - start
            if elapsed > timeout:
                result = EvaluationResult(
                    status="timeout", detail=f"took {elapsed:.3f}s (limit {timeout}s)"
                )
            results[i] = result
        return results


__all__ = ["SerialExecutor"]
