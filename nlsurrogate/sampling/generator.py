"""
Training-data generator for one non-linear subsystem.

Algorithm
---------
1. Draw the full attempt budget of candidate inputs from the configured
   design with the equation's own seeded RNG.
2. Evaluate candidates in batches through an executor, always with the same
   pinned initial guess for the iteration variables.
3. Walk the results in candidate order: converged results become samples,
   everything else is counted by kind and skipped.
4. Stop at `sample_count` samples or when the budget is used up.

Batches never ask for more than the number of samples still missing, so the
dataset can never exceed `sample_count` and the sample matrix depends only on
(seed, equation id, ranges, evaluator), not on the executor or worker count.
"""

from __future__ import annotations

import threading
import warnings
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from nlsurrogate.config import get_settings
from nlsurrogate.domain.models import ProfilingInfo, TrainingDataset, VariableRange
from nlsurrogate.errors import InsufficientSamplesWarning
from nlsurrogate.evaluators import Evaluator, validate_outputs
from nlsurrogate.executors import AbstractSampleExecutor, create_executor
from nlsurrogate.sampling.designs import candidate_inputs, equation_seed
from nlsurrogate.utils.logging import get_logger
from nlsurrogate.utils.profiler import profile_block

log = get_logger(__name__)

FAILURE_KINDS = {"failed": "not_converged", "timeout": "timeout", "error": "error"}


def _aligned_ranges(
    info: ProfilingInfo, ranges: Union[Mapping[str, VariableRange], Sequence[VariableRange]]
) -> tuple[VariableRange, ...]:
    by_name = ranges if isinstance(ranges, Mapping) else {r.name: r for r in ranges}
    missing = [name for name in info.using_vars if name not in by_name]
    if missing:
        raise ValueError(f"Equation {info.equation_id}: no range for {missing}")
    return tuple(by_name[name] for name in info.using_vars)


def generate(
    info: ProfilingInfo,
    ranges: Union[Mapping[str, VariableRange], Sequence[VariableRange]],
    evaluator: Evaluator,
    sample_count: Optional[int] = None,
    *,
    seed: Optional[int] = None,
    design: Optional[str] = None,
    executor: Union[str, AbstractSampleExecutor, None] = None,
    workers: Optional[int] = None,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    initial_guess: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> TrainingDataset:
    """
    Generate a TrainingDataset for one ProfilingInfo.

    Parameters
    ----------
    info : ProfilingInfo
        Resolved subsystem; fixes input and output column order.
    ranges : mapping or sequence of VariableRange
        Bounds for every entry of `info.using_vars`.
    evaluator : Evaluator
        Isolated solver for the subsystem.
    sample_count : int | None
        Target number of converged samples (settings.sample_count).
    seed : int | None
        Global seed; combined with the equation id (settings.seed). The
        dataset records the derived per-equation seed.
    design : str | None
        "uniform", "latin_hypercube" or "grid" (settings.sampling_design).
    executor : str | AbstractSampleExecutor | None
        Executor name or instance (settings.executor). Instances passed in
        are not closed here.
    workers : int | None
        Worker count for executors created here (settings.workers).
    max_attempts : int | None
        Attempt budget (settings.attempt_factor * sample_count).
    timeout : float | None
        Per-sample timeout in seconds (settings.evaluation_timeout_seconds).
    initial_guess : str | None
        Initial-guess policy, "start" or "zeros" (settings.initial_guess).
    cancel_event : threading.Event | None
        When set, no new samples are issued; the dataset is returned as is.

    Returns
    -------
    TrainingDataset
        At most `sample_count` converged samples. A shortfall attaches an
        InsufficientSamplesWarning (also emitted through `warnings`).
    """
    settings = get_settings()
    sample_count = settings.sample_count if sample_count is None else sample_count
    seed = settings.seed if seed is None else seed
    design = design or settings.sampling_design
    timeout = settings.evaluation_timeout_seconds if timeout is None else timeout
    guess_policy = initial_guess or settings.initial_guess
    budget = settings.attempt_factor * sample_count if max_attempts is None else max_attempts
    workers = settings.workers if workers is None else workers
    if sample_count < 1:
        raise ValueError(f"sample_count must be positive, got {sample_count}")
    if timeout <= 0:
        raise ValueError(f"timeout must be positive, got {timeout}")
    if budget < sample_count:
        raise ValueError(f"max_attempts ({budget}) is smaller than sample_count ({sample_count})")

    aligned = _aligned_ranges(info, ranges)
    guess = info.initial_guess(guess_policy)
    n_outputs = len(info.iteration_variables)
    equation_seed_value = equation_seed(seed, info.equation_id)
    rng = np.random.default_rng(equation_seed_value)
    candidates = candidate_inputs(design, rng, aligned, sample_count, budget)

    owns_executor = not isinstance(executor, AbstractSampleExecutor)
    runner = (
        create_executor(executor or settings.executor, evaluator, workers)
        if owns_executor
        else executor
    )

    accepted: List[int] = []
    outputs: List[tuple[float, ...]] = []
    failure_kinds: Counter[str] = Counter()
    attempts = 0
    cancelled = False

    log.info(
        f"[SAMPLING START] equation {info.equation_id}",
        extra={
            "equation_id": info.equation_id,
            "sample_count": sample_count,
            "budget": budget,
            "design": design,
            "executor": runner.name,
        },
    )
    with profile_block(f"sampling-eq{info.equation_id}", enable_tracemalloc=False) as stats:
        try:
            while len(accepted) < sample_count and attempts < budget:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                size = min(sample_count - len(accepted), budget - attempts)
                batch = candidates[attempts : attempts + size]
                results = runner.run_batch(batch, guess, timeout, cancel_event)
                for offset, result in enumerate(results):
                    if result is None:
                        cancelled = True
                        break
                    result = validate_outputs(result, n_outputs)
                    if result.converged:
                        accepted.append(attempts + offset)
                        outputs.append(result.outputs)
                    else:
                        failure_kinds[FAILURE_KINDS.get(result.status, "error")] += 1
                attempts += sum(1 for r in results if r is not None)
                if cancelled:
                    break
        finally:
            if owns_executor:
                runner.close()

    failures = sum(failure_kinds.values())
    dataset_warnings: tuple[InsufficientSamplesWarning, ...] = ()
    if len(accepted) < sample_count:
        warning = InsufficientSamplesWarning(info.equation_id, len(accepted), sample_count, attempts)
        dataset_warnings = (warning,)
        warnings.warn(warning, stacklevel=2)
        log.warning(
            str(warning),
            extra={
                "equation_id": info.equation_id,
                "collected": len(accepted),
                "requested": sample_count,
                "attempts": attempts,
                "cancelled": cancelled,
            },
        )

    n_inputs = len(info.using_vars)
    input_matrix = (
        candidates[accepted] if accepted else np.empty((0, n_inputs), dtype=np.float64)
    )
    output_matrix = (
        np.array(outputs, dtype=np.float64) if outputs else np.empty((0, n_outputs), dtype=np.float64)
    )
    run_stats: Dict[str, object] = {
        "duration_seconds": round(stats.duration_seconds, 3),
        "peak_rss_bytes": stats.peak_rss_bytes,
        "executor": runner.name,
        "workers": runner.workers,
        "initial_guess": list(guess),
    }
    log.info(
        f"[SAMPLING COMPLETE] equation {info.equation_id}",
        extra={
            "equation_id": info.equation_id,
            "samples": len(accepted),
            "attempts": attempts,
            "failures": failures,
            "duration": run_stats["duration_seconds"],
        },
    )
    return TrainingDataset(
        info=info,
        ranges=aligned,
        inputs=input_matrix,
        outputs=output_matrix,
        requested=sample_count,
        attempts=attempts,
        failures=failures,
        seed=equation_seed_value,
        design=design,
        failure_kinds=dict(failure_kinds),
        cancelled=cancelled,
        warnings=dataset_warnings,
        stats=run_stats,
    )


__all__ = ["FAILURE_KINDS", "generate"]
