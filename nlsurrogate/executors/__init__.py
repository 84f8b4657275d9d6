"""
Executors package for nlsurrogate.

This module re-exports the abstract interfaces and the concrete executor
classes, and keeps the name -> factory registry used by the generator and the
orchestrator.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from nlsurrogate.evaluators import Evaluator
from nlsurrogate.executors.abstract import (
    AbstractSampleExecutor,
    SampleExecutor,
    evaluate_safely,
)
from nlsurrogate.executors.multiprocessing import ProcessExecutor
from nlsurrogate.executors.serial import SerialExecutor
from nlsurrogate.executors.threaded import ThreadedExecutor

ExecutorFactory = Callable[[Evaluator, Optional[int]], AbstractSampleExecutor]


def _executor_factories() -> Dict[str, ExecutorFactory]:
    """Registry of available executors."""
    return {
        "serial": lambda evaluator, workers: SerialExecutor(evaluator),
        "threads": lambda evaluator, workers: ThreadedExecutor(evaluator, workers or 1),
        "processes": lambda evaluator, workers: ProcessExecutor(evaluator, workers),
    }


def available_executors() -> List[str]:
    """List available executor names."""
    return sorted(_executor_factories().keys())


def create_executor(
    name: str, evaluator: Evaluator, workers: Optional[int] = None
) -> AbstractSampleExecutor:
    factories = _executor_factories()
    if name not in factories:
        raise ValueError(f"Unknown executor '{name}'. Available: {', '.join(factories)}")
    return factories[name](evaluator, workers)


__all__ = [
    # Abstracts
    "AbstractSampleExecutor",
    "SampleExecutor",
    "evaluate_safely",
    # Concrete executors
    "ProcessExecutor",
    "SerialExecutor",
    "ThreadedExecutor",
    # Registry
    "available_executors",
    "create_executor",
]
