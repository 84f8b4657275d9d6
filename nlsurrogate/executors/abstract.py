"""
Abstract executor interface for running subsystem evaluations.

An executor owns the concurrency boundary around one evaluator: it takes a
batch of input vectors, evaluates them (sequentially, on threads, or in
isolated worker processes) and returns one EvaluationResult per input in
submission order. Per-sample problems (timeouts, solver exceptions) become
results, never exceptions, so a single bad sample cannot abort a dataset.
"""

from __future__ import annotations

import abc
import threading
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from nlsurrogate.errors import EvaluatorConvergenceFailure, EvaluatorTimeoutError
from nlsurrogate.evaluators import EvaluationResult, Evaluator


def evaluate_safely(
    evaluator: Evaluator, inputs: Sequence[float], initial_guess: Sequence[float]
) -> EvaluationResult:
    """Run one evaluation and turn any exception into a failed result."""
    try:
        return evaluator.evaluate(inputs, initial_guess)
    except EvaluatorTimeoutError as exc:
        return EvaluationResult(status="timeout", detail=str(exc))
    except EvaluatorConvergenceFailure as exc:
        return EvaluationResult.failed(str(exc) or "not converged")
    except Exception as exc:  # noqa: BLE001 - per-sample failures are counted, not raised
        return EvaluationResult(status="error", detail=f"{type(exc).__name__}: {exc}")


@runtime_checkable
class SampleExecutor(Protocol):
    """
    Common interface all sample executors implement.

    Attributes
    ----------
    name : str
        A short machine-friendly identifier.
    description : str
        A human-friendly summary of the approach.
    """

    name: str
    description: str

    def run_batch(
        self,
        batch: Sequence[Sequence[float]],
        initial_guess: Sequence[float],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Optional[EvaluationResult]]:
        """
        Evaluate every input vector of `batch`.

        Returns
        -------
        List[EvaluationResult | None]
            Results in submission order. `None` marks inputs that were never
            issued because `cancel_event` was set; they are always a suffix.
        """
        ...

    def close(self) -> None:
        """Release pools/threads held by the executor."""
        ...


class AbstractSampleExecutor(abc.ABC):
    """
    ABC helper for class-based executors; binds one evaluator and a worker count.
    """

    name: str
    description: str

    def __init__(self, evaluator: Evaluator, workers: int = 1) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.evaluator = evaluator
        self.workers = workers

    @abc.abstractmethod
    def run_batch(
        self,
        batch: Sequence[Sequence[float]],
        initial_guess: Sequence[float],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Optional[EvaluationResult]]:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:
        return None

    def __enter__(self) -> "AbstractSampleExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def waves(size: int, width: int) -> List[range]:
    """Split `range(size)` into consecutive chunks of at most `width`."""
    return [range(start, min(start + width, size)) for start in range(0, size, width)]


__all__ = [
    "AbstractSampleExecutor",
    "SampleExecutor",
    "evaluate_safely",
    "waves",
]
