"""
Pipeline orchestrator: trace -> hotspots -> dependencies -> ranges -> datasets.

Usage (example from CLI):
    from nlsurrogate.orchestrator import PipelineConfig, run_pipeline
    from nlsurrogate.simulation import ResultFileSource

    report = run_pipeline(
        PipelineConfig(
            model_name="simpleLoop",
            trace_path="work/simpleLoop_prof.json",
            structure_path="work/simpleLoop_info.json",
            threshold=0.1,
        ),
        simulation=ResultFileSource("work/simpleLoop_res.csv"),
        evaluator_factory=my_factory,
    )

Outputs are saved to `<results_dir>/<model>/` by default (see
`nlsurrogate.artifacts` for the layout).

Failure handling: a malformed trace or structure and a reference simulation
that keeps failing after retries affect every equation and propagate. Any
other problem is confined to its equation and recorded as an outcome; with
`failure_policy="strict"` the first per-equation failure is re-raised instead.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel, Field
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from nlsurrogate.analysis.dependencies import resolve_many
from nlsurrogate.analysis.structure import ModelStructure, StructureSource, load_structure
from nlsurrogate.artifacts import (
    persist_summary,
    write_dataset,
    write_profiling_info,
)
from nlsurrogate.config import Settings, get_settings
from nlsurrogate.domain.models import (
    EquationOutcome,
    EquationRecord,
    ProfilingInfo,
    VariableRange,
)
from nlsurrogate.errors import RangeDiscoveryError, SimulationFailureError
from nlsurrogate.evaluators import EvaluatorFactory
from nlsurrogate.profiling.hotspots import select_hotspots
from nlsurrogate.profiling.trace import TraceSource, read_trace
from nlsurrogate.ranges import discover_ranges
from nlsurrogate.sampling.generator import generate
from nlsurrogate.simulation import ReferenceSimulationCache, SimulationSource
from nlsurrogate.utils.logging import get_logger
from nlsurrogate.utils.profiler import profile_block

log = get_logger(__name__)

_SIMULATION_WAIT = wait_exponential(multiplier=1, min=1, max=10)


class PipelineConfig(BaseModel):
    """
    Per-run options. Fields left as None fall back to Settings.
    """

    model_name: str
    trace_path: Path
    structure_path: Path
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    sample_count: Optional[int] = Field(None, gt=0)
    attempt_factor: Optional[int] = Field(None, ge=1)
    seed: Optional[int] = Field(None, ge=0)
    design: Optional[Literal["uniform", "latin_hypercube", "grid"]] = None
    executor: Optional[Literal["serial", "threads", "processes"]] = None
    workers: Optional[int] = Field(None, ge=1)
    evaluation_timeout_seconds: Optional[float] = Field(None, gt=0.0)
    initial_guess: Optional[Literal["start", "zeros"]] = None
    range_margin: Optional[float] = Field(None, ge=0.0)
    range_absolute_margin: Optional[float] = Field(None, gt=0.0)
    equation_concurrency: Optional[int] = Field(None, ge=1)
    simulation_retries: Optional[int] = Field(None, ge=1)
    include_time: bool = True
    equation_ids: Optional[List[int]] = None
    results_dir: Optional[Path] = None
    persist: bool = True
    failure_policy: Literal["tolerant", "strict"] = "tolerant"

    model_config = {"frozen": True, "protected_namespaces": ()}

    def with_defaults(self, settings: Settings) -> "PipelineConfig":
        """Return a copy with every unset option taken from `settings`."""
        defaults = {
            "threshold": settings.hotspot_threshold,
            "sample_count": settings.sample_count,
            "attempt_factor": settings.attempt_factor,
            "seed": settings.seed,
            "design": settings.sampling_design,
            "executor": settings.executor,
            "workers": settings.workers,
            "evaluation_timeout_seconds": settings.evaluation_timeout_seconds,
            "initial_guess": settings.initial_guess,
            "range_margin": settings.range_margin,
            "range_absolute_margin": settings.range_absolute_margin,
            "equation_concurrency": settings.equation_concurrency,
            "simulation_retries": settings.simulation_retries,
            "results_dir": Path(settings.results_dir),
        }
        update = {k: v for k, v in defaults.items() if getattr(self, k) is None}
        return self.model_copy(update=update)

    @property
    def model_dir(self) -> Path:
        return Path(self.results_dir or "results") / self.model_name


@dataclass
class PipelineReport:
    """Everything one pipeline run produced, one outcome per selected equation."""

    model_name: str
    threshold: float
    hotspots: List[EquationRecord]
    infos: List[ProfilingInfo] = field(default_factory=list)
    outcomes: List[EquationOutcome] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stats: Dict[str, object] = field(default_factory=dict)

    def _with_status(self, status: str) -> List[EquationOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> List[EquationOutcome]:
        return self._with_status("success")

    @property
    def skipped(self) -> List[EquationOutcome]:
        return self._with_status("skipped")

    @property
    def failed(self) -> List[EquationOutcome]:
        return self._with_status("failed")

    @property
    def cancelled(self) -> List[EquationOutcome]:
        return self._with_status("cancelled")

    def outcome(self, equation_id: int) -> Optional[EquationOutcome]:
        return next((o for o in self.outcomes if o.equation_id == equation_id), None)

    def summary(self) -> Dict[str, object]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        return {
            "model": self.model_name,
            "timestamp": self.timestamp,
            "threshold": self.threshold,
            "hotspots": [r.model_dump(mode="json") for r in self.hotspots],
            "outcomes": [o.summary() for o in self.outcomes],
            "counts": counts,
            "stats": self.stats,
        }


def profile_equations(
    trace: TraceSource,
    structure: StructureSource | ModelStructure,
    threshold: Optional[float] = None,
    *,
    model_name: Optional[str] = None,
    include_time: bool = True,
    equation_ids: Optional[Iterable[int]] = None,
) -> Tuple[List[EquationRecord], List[ProfilingInfo], Dict[int, str]]:
    """
    Find the slowest non-linear systems and resolve their inputs and outputs.

    Returns
    -------
    hotspots : list of EquationRecord
        Selected records, slowest first.
    infos : list of ProfilingInfo
        Successfully resolved hotspots, same order.
    unresolved : dict
        Equation id -> reason for every hotspot that was skipped.

    Raises
    ------
    MalformedTraceError, MalformedModelStructureError
        If either input cannot be read.
    """
    records = read_trace(trace)
    if not isinstance(structure, ModelStructure):
        structure = load_structure(structure, name=model_name)

    candidates: Set[int] = set(structure.nonlinear_system_ids(top_level_only=True))
    if equation_ids is not None:
        candidates &= set(equation_ids)
    hotspots = select_hotspots(records, threshold, candidates=candidates)
    log.info(
        f"[HOTSPOTS] {len(hotspots)} non-linear system(s) selected",
        extra={
            "model": structure.name,
            "threshold": threshold,
            "equations": [r.id for r in hotspots],
            "candidates": len(candidates),
        },
    )
    infos, failures = resolve_many(hotspots, structure, include_time=include_time)
    return hotspots, infos, {eq: err.reason for eq, err in failures.items()}


def _run_reference_simulation(
    source: SimulationSource, cache: ReferenceSimulationCache, attempts: int
) -> Path:
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=_SIMULATION_WAIT,
        retry=retry_if_exception_type(SimulationFailureError),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )

    def _run(src: SimulationSource) -> Path:
        with profile_block(f"simulation-{src.model_id}") as stats:
            path = retrying(src.run)
        log.info(
            f"[SIMULATION] reference result ready for {src.model_id}",
            extra={"result": str(path), **stats.as_dict()},
        )
        return path

    return cache.get(source, run=_run)


def _discover_shared_ranges(
    infos: List[ProfilingInfo], result_path: Path, config: PipelineConfig
) -> Tuple[Dict[str, VariableRange], Dict[str, str]]:
    """
    One pass over the reference result for the union of all inputs.

    Variables that cannot be bounded are dropped and reported so only the
    equations reading them are skipped.
    """
    wanted: List[str] = list(dict.fromkeys(v for info in infos for v in info.using_vars))
    unusable: Dict[str, str] = {}
    while wanted:
        try:
            ranges = discover_ranges(
                wanted,
                result_path,
                margin=config.range_margin,
                absolute_margin=config.range_absolute_margin,
            )
            return ranges, unusable
        except RangeDiscoveryError as exc:
            bad = [v for v in exc.variables if v in wanted] or list(wanted)
            for name in bad:
                unusable[name] = exc.reason
            wanted = [v for v in wanted if v not in unusable]
    return {}, unusable


def _process_equation(
    info: ProfilingInfo,
    ranges: Dict[str, VariableRange],
    evaluator_factory: EvaluatorFactory,
    config: PipelineConfig,
    cancel_event: threading.Event,
) -> EquationOutcome:
    equation_id = info.equation_id
    if cancel_event.is_set():
        return EquationOutcome(equation_id, "cancelled", reason="pipeline cancelled")

    log.info(f"[EQUATION START] {equation_id}", extra={"equation_id": equation_id})
    try:
        evaluator = evaluator_factory(info)
        dataset = generate(
            info,
            {name: ranges[name] for name in info.using_vars},
            evaluator,
            config.sample_count,
            seed=config.seed,
            design=config.design,
            executor=config.executor,
            workers=config.workers,
            max_attempts=config.attempt_factor * config.sample_count,
            timeout=config.evaluation_timeout_seconds,
            initial_guess=config.initial_guess,
            cancel_event=cancel_event,
        )
        artifact_dir = write_dataset(dataset, config.model_dir) if config.persist else None
    except Exception as exc:  # noqa: BLE001 - intentional broad catch to isolate equations
        log.exception(f"[EQUATION FAILED] {equation_id}", extra={"equation_id": equation_id})
        if config.failure_policy == "strict":
            raise
        return EquationOutcome(equation_id, "failed", reason=f"{type(exc).__name__}: {exc}")

    status = "cancelled" if dataset.cancelled else "success"
    reason = str(dataset.warnings[0]) if dataset.warnings else None
    log.info(
        f"[EQUATION {status.upper()}] {equation_id}",
        extra={"equation_id": equation_id, "samples": dataset.size, "failures": dataset.failures},
    )
    return EquationOutcome(equation_id, status, reason=reason, dataset=dataset, artifact_dir=artifact_dir)


def run_pipeline(
    config: PipelineConfig,
    simulation: SimulationSource,
    evaluator_factory: EvaluatorFactory,
    *,
    cache: Optional[ReferenceSimulationCache] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PipelineReport:
    """
    Run the whole pipeline for one model and optionally persist the artifacts.

    Parameters
    ----------
    config : PipelineConfig
        Paths and per-run overrides.
    simulation : SimulationSource
        Reference simulation used for range discovery (run at most once).
    evaluator_factory : callable
        `factory(info) -> Evaluator` for the isolated subsystem of each equation.
    cache : ReferenceSimulationCache | None
        Memo of reference runs to share across calls; each call gets a fresh
        one when omitted, so the source is always run at least once per call.
    cancel_event : threading.Event | None
        Set it to stop issuing new work; in-flight evaluations still finish.

    Returns
    -------
    PipelineReport
        One outcome per selected equation, in hotspot order.
    """
    config = config.with_defaults(get_settings())
    cache = cache if cache is not None else ReferenceSimulationCache()
    cancel_event = cancel_event if cancel_event is not None else threading.Event()

    log.info(f"{'=' * 60}")
    log.info(f"[PIPELINE] {config.model_name}", extra={"model": config.model_name})
    log.info(f"{'=' * 60}")

    hotspots, infos, unresolved = profile_equations(
        config.trace_path,
        config.structure_path,
        config.threshold,
        model_name=config.model_name,
        include_time=config.include_time,
        equation_ids=config.equation_ids,
    )
    report = PipelineReport(
        model_name=config.model_name,
        threshold=float(config.threshold),
        hotspots=hotspots,
        infos=infos,
    )
    outcomes: Dict[int, EquationOutcome] = {
        eq: EquationOutcome(eq, "skipped", reason=reason) for eq, reason in unresolved.items()
    }
    if config.persist and infos:
        write_profiling_info(infos, config.model_dir)

    runnable: List[ProfilingInfo] = []
    ranges: Dict[str, VariableRange] = {}
    if infos:
        result_path = _run_reference_simulation(simulation, cache, config.simulation_retries)
        ranges, unusable = _discover_shared_ranges(infos, result_path, config)
        for info in infos:
            bad = [v for v in info.using_vars if v in unusable]
            if bad:
                reason = "; ".join(f"{v}: {unusable[v]}" for v in bad)
                log.warning(
                    f"[SKIPPED] equation {info.equation_id}: no range for {bad}",
                    extra={"equation_id": info.equation_id, "variables": bad},
                )
                outcomes[info.equation_id] = EquationOutcome(
                    info.equation_id, "skipped", reason=f"range discovery failed ({reason})"
                )
            else:
                runnable.append(info)

    with profile_block(f"pipeline-{config.model_name}") as stats:
        with ThreadPoolExecutor(
            max_workers=config.equation_concurrency, thread_name_prefix="nls-equation"
        ) as pool:
            futures: Dict[int, Future[EquationOutcome]] = {
                info.equation_id: pool.submit(
                    _process_equation, info, ranges, evaluator_factory, config, cancel_event
                )
                for info in runnable
            }
            try:
                for equation_id, future in futures.items():
                    outcomes[equation_id] = future.result()
            except BaseException:
                # strict policy or KeyboardInterrupt: stop issuing new work
                cancel_event.set()
                raise
    report.stats = stats.as_dict()

    report.outcomes = [outcomes[r.id] for r in hotspots if r.id in outcomes]

    if config.persist:
        persist_summary(report.summary(), config.model_dir)

    log.info(
        f"[PIPELINE COMPLETE] {len(report.succeeded)}/{len(report.outcomes)} equation(s) sampled",
        extra={
            "model": config.model_name,
            "succeeded": [o.equation_id for o in report.succeeded],
            "skipped": [o.equation_id for o in report.skipped],
            "failed": [o.equation_id for o in report.failed],
        },
    )
    return report


__all__ = [
    "PipelineConfig",
    "PipelineReport",
    "profile_equations",
    "run_pipeline",
]
