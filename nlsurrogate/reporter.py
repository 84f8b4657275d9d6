from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from nlsurrogate.domain.models import (
    EquationRecord,
    ProfilingInfo,
    TrainingDataset,
    VariableRange,
)

if TYPE_CHECKING:
    from nlsurrogate.orchestrator import PipelineReport

_STATUS_STYLE = {
    "success": "bold green",
    "skipped": "yellow",
    "failed": "bold red",
    "cancelled": "magenta",
}


def _names(values: Iterable[str]) -> str:
    return ", ".join(values) or "-"


def hotspot_table(
    records: Iterable[EquationRecord],
    infos: Optional[Mapping[int, ProfilingInfo]] = None,
    title: str = "Non-linear hotspots",
) -> Table:
    """
    Table of selected equations, slowest first.

    When resolved infos are given, their inputs and outputs are shown too.
    """
    infos = infos or {}
    table = Table(title=title, box=box.ROUNDED, caption="Sorted by share of simulation time")
    table.add_column("Equation", style="cyan", no_wrap=True)
    table.add_column("Calls", justify="right", style="magenta")
    table.add_column("Time (s)", justify="right", style="green")
    table.add_column("Share", justify="right", style="bold green")
    table.add_column("Inputs", style="blue")
    table.add_column("Iteration vars", style="yellow")

    for record in records:
        info = infos.get(record.id)
        table.add_row(
            str(record.id),
            f"{record.call_count:,}",
            f"{record.total_time:.6f}",
            f"{record.fraction_of_total:.1%}",
            _names(info.using_vars) if info else "[dim]unresolved[/dim]",
            _names(info.iteration_variables) if info else "-",
        )
    return table


def ranges_table(ranges: Iterable[VariableRange], title: str = "Sampling ranges") -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Variable", style="cyan", no_wrap=True)
    table.add_column("Observed min", justify="right")
    table.add_column("Observed max", justify="right")
    table.add_column("Min", justify="right", style="green")
    table.add_column("Max", justify="right", style="green")
    for r in ranges:
        table.add_row(r.name, f"{r.observed_min:.6g}", f"{r.observed_max:.6g}", f"{r.min:.6g}", f"{r.max:.6g}")
    return table


def outcome_table(report: "PipelineReport") -> Table:
    table = Table(
        title=f"Training data for {report.model_name}",
        box=box.ROUNDED,
        caption=f"Hotspot threshold {report.threshold:.1%}",
    )
    table.add_column("Equation", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Samples", justify="right", style="magenta")
    table.add_column("Attempts", justify="right")
    table.add_column("Failures", justify="right", style="red")
    table.add_column("Duration (s)", justify="right", style="green")
    table.add_column("Detail", style="dim")

    for outcome in report.outcomes:
        style = _STATUS_STYLE.get(outcome.status, "")
        dataset = outcome.dataset
        if dataset is not None:
            samples = f"{dataset.size:,}/{dataset.requested:,}"
            attempts = f"{dataset.attempts:,}"
            failures = f"{dataset.failures:,}"
            duration = dataset.stats.get("duration_seconds")
            duration_str = f"{duration:.1f}" if isinstance(duration, (int, float)) else "N/A"
        else:
            samples = attempts = failures = duration_str = "-"
        detail = outcome.reason or (str(outcome.artifact_dir) if outcome.artifact_dir else "")
        table.add_row(
            str(outcome.equation_id),
            f"[{style}]{outcome.status}[/{style}]" if style else outcome.status,
            samples,
            attempts,
            failures,
            duration_str,
            detail,
        )
    return table


def dataset_table(dataset: TrainingDataset, rows: int = 10) -> Table:
    """First `rows` samples of a dataset, inputs then outputs."""
    n_in = len(dataset.info.using_vars)
    table = Table(
        title=f"Equation {dataset.equation_id}: {dataset.size:,} sample(s)",
        box=box.ROUNDED,
        caption=f"design={dataset.design} seed={dataset.seed} attempts={dataset.attempts:,}",
    )
    for i, column in enumerate(dataset.columns):
        table.add_column(column, justify="right", style="blue" if i < n_in else "yellow")
    for row in dataset.matrix[:rows].tolist():
        table.add_row(*(f"{v:.6g}" for v in row))
    return table


def print_report(report: "PipelineReport", console: Optional[Console] = None) -> None:
    """
    Render a pipeline report: hotspots first, then one row per equation outcome.
    """
    console = console or Console()
    if not report.hotspots:
        console.print(
            f"[yellow]No non-linear system above {report.threshold:.1%} of simulation time.[/yellow]"
        )
        return
    console.print(hotspot_table(report.hotspots, {i.equation_id: i for i in report.infos}))
    console.print(outcome_table(report))


__all__ = [
    "dataset_table",
    "hotspot_table",
    "outcome_table",
    "print_report",
    "ranges_table",
]
