from __future__ import annotations

import json
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console

from nlsurrogate.artifacts import load_dataset
from nlsurrogate.config import get_settings
from nlsurrogate.errors import NlSurrogateError
from nlsurrogate.evaluators import (
    CommandEvaluatorFactory,
    EvaluatorFactory,
    load_evaluator_factory,
)
from nlsurrogate.executors import available_executors
from nlsurrogate.orchestrator import PipelineConfig, profile_equations, run_pipeline
from nlsurrogate.ranges import discover_ranges
from nlsurrogate.reporter import dataset_table, hotspot_table, print_report, ranges_table
from nlsurrogate.sampling.designs import available_designs
from nlsurrogate.simulation import OmcSession, ResultFileSource, SimulationSource
from nlsurrogate.utils.logging import configure_logging

app = typer.Typer(help="Training data generator for non-linear equation surrogates.")
console = Console()


class Design(str, Enum):
    uniform = "uniform"
    latin_hypercube = "latin_hypercube"
    grid = "grid"


class ExecutorName(str, Enum):
    serial = "serial"
    threads = "threads"
    processes = "processes"


def _setup_logging() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)


def _model_inputs(
    model: str,
    work_dir: Path,
    trace: Optional[Path],
    structure: Optional[Path],
    result: Optional[Path],
    mo_file: Optional[Path],
) -> Tuple[Path, Path, SimulationSource]:
    """
    Locate trace, structure and reference result for `model`.

    With a `.mo` file the model is simulated once with omc; that run is also
    the reference simulation. Otherwise the files default to the names omc
    writes into `work_dir`.
    """
    if mo_file is not None:
        settings = get_settings()
        session = OmcSession(
            model,
            mo_file,
            work_dir,
            omc_path=settings.omc_path,
            timeout_seconds=settings.simulation_timeout_seconds,
        )
        typer.echo(f"Simulating {model} with OpenModelica in {session.work_dir} ...")
        artifacts = session.simulate()
        return (
            artifacts.trace_path,
            artifacts.structure_path,
            ResultFileSource(artifacts.result_path, model_id=model),
        )
    return (
        trace or work_dir / f"{model}_prof.json",
        structure or work_dir / f"{model}_info.json",
        ResultFileSource(result or work_dir / f"{model}_res.csv", model_id=model),
    )


def _evaluator_factory(
    evaluator: Optional[str], evaluator_command: Optional[str], timeout: Optional[float]
) -> EvaluatorFactory:
    if bool(evaluator) == bool(evaluator_command):
        raise typer.BadParameter("Pass exactly one of --evaluator or --evaluator-command.")
    if evaluator:
        return load_evaluator_factory(evaluator)
    return CommandEvaluatorFactory(
        evaluator_command,  # type: ignore[arg-type]
        timeout_seconds=timeout or get_settings().evaluation_timeout_seconds,
    )


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"threshold={settings.hotspot_threshold} samples={settings.sample_count} "
        f"attempt_factor={settings.attempt_factor} seed={settings.seed} "
        f"design={settings.sampling_design} | executor={settings.executor} "
        f"workers={settings.workers} timeout={settings.evaluation_timeout_seconds}s | "
        f"margin={settings.range_margin} results_dir={settings.results_dir}"
    )
    typer.echo(
        f"Executors: {', '.join(available_executors())} | Designs: {', '.join(available_designs())}"
    )


@app.command()
def profile(
    model: str = typer.Argument(..., help="Model name, e.g. simpleLoop."),
    work_dir: Path = typer.Option(Path("."), "--work-dir", "-w", help="Directory with simulator output."),
    trace: Optional[Path] = typer.Option(None, "--trace", help="Profiling trace (<model>_prof.json)."),
    structure: Optional[Path] = typer.Option(None, "--structure", help="Model structure (<model>_info.json)."),
    mo_file: Optional[Path] = typer.Option(None, "--mo", help="Simulate this .mo file with omc first."),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Minimum share of simulation time."),
    as_json: bool = typer.Option(False, "--json", help="Print profiling info as JSON."),
) -> None:
    """
    List the non-linear systems worth replacing and their inputs and outputs.
    """
    _setup_logging()
    trace_path, structure_path, _ = _model_inputs(model, work_dir, trace, structure, None, mo_file)
    threshold = get_settings().hotspot_threshold if threshold is None else threshold
    hotspots, infos, unresolved = profile_equations(
        trace_path, structure_path, threshold, model_name=model
    )
    if as_json:
        typer.echo(json.dumps([i.model_dump(mode="json") for i in infos], indent=2))
        return
    if not hotspots:
        typer.echo(f"No non-linear system above {threshold:.1%} of simulation time.")
        return
    console.print(hotspot_table(hotspots, {i.equation_id: i for i in infos}))
    for equation_id, reason in unresolved.items():
        typer.echo(f"Skipped equation {equation_id}: {reason}", err=True)


@app.command()
def ranges(
    variables: List[str] = typer.Argument(..., help="Variables to bound."),
    result: Path = typer.Option(..., "--result", "-r", help="Reference result file (CSV)."),
    margin: Optional[float] = typer.Option(None, "--margin", help="Relative widening (0.01 = 1%)."),
) -> None:
    """
    Show the sampling ranges derived from a reference simulation result.
    """
    _setup_logging()
    found = discover_ranges(variables, ResultFileSource(result), margin=margin)
    console.print(ranges_table(found.values()))


@app.command()
def run(
    model: str = typer.Argument(..., help="Model name, e.g. simpleLoop."),
    evaluator: Optional[str] = typer.Option(
        None, "--evaluator", "-e", help="Evaluator factory as 'module:attribute'."
    ),
    evaluator_command: Optional[str] = typer.Option(
        None,
        "--evaluator-command",
        help="Command speaking JSON on stdin/stdout; may contain {equation_id}.",
    ),
    work_dir: Path = typer.Option(Path("."), "--work-dir", "-w", help="Directory with simulator output."),
    trace: Optional[Path] = typer.Option(None, "--trace", help="Profiling trace (<model>_prof.json)."),
    structure: Optional[Path] = typer.Option(None, "--structure", help="Model structure (<model>_info.json)."),
    result: Optional[Path] = typer.Option(None, "--result", help="Reference result (<model>_res.csv)."),
    mo_file: Optional[Path] = typer.Option(None, "--mo", help="Simulate this .mo file with omc first."),
    equation: Optional[List[int]] = typer.Option(None, "--equation", help="Restrict to these equation ids."),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t"),
    samples: Optional[int] = typer.Option(None, "--samples", "-n", help="Converged samples per equation."),
    seed: Optional[int] = typer.Option(None, "--seed"),
    design: Optional[Design] = typer.Option(None, "--design", help="Candidate design."),
    executor: Optional[ExecutorName] = typer.Option(None, "--executor", help="Sample executor."),
    workers: Optional[int] = typer.Option(None, "--workers"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds per evaluation."),
    strict: bool = typer.Option(False, "--strict", help="Abort on the first equation failure."),
    no_persist: bool = typer.Option(False, "--no-persist", help="Do not write artifacts."),
) -> None:
    """
    Profile, bound and sample every hotspot, then persist the datasets.
    """
    _setup_logging()
    factory = _evaluator_factory(evaluator, evaluator_command, timeout)
    trace_path, structure_path, source = _model_inputs(
        model, work_dir, trace, structure, result, mo_file
    )
    config = PipelineConfig(
        model_name=model,
        trace_path=trace_path,
        structure_path=structure_path,
        threshold=threshold,
        sample_count=samples,
        seed=seed,
        design=design.value if design else None,
        executor=executor.value if executor else None,
        workers=workers,
        evaluation_timeout_seconds=timeout,
        equation_ids=equation or None,
        persist=not no_persist,
        failure_policy="strict" if strict else "tolerant",
    )
    report = run_pipeline(config, source, factory)
    print_report(report, console)
    if config.persist:
        typer.echo(f"Artifacts written to {config.with_defaults(get_settings()).model_dir}")


@app.command()
def show(
    path: Path = typer.Argument(..., help="Equation artifact directory (eq_<id>)."),
    rows: int = typer.Option(10, "--rows", help="Number of samples to print."),
) -> None:
    """
    Print a persisted dataset and its ranges.
    """
    dataset = load_dataset(path)
    console.print(ranges_table(dataset.ranges, title=f"Ranges for equation {dataset.equation_id}"))
    console.print(dataset_table(dataset, rows=rows))
    for warning in dataset.warnings:
        typer.echo(f"Warning: {warning}", err=True)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
    except NlSurrogateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
