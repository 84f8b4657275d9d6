"""
Persisted artifacts handed to the external training and integration steps.

Layout under `<results_dir>/<model>/`:

    profiling_info.json          every resolved equation (inputs/outputs/inner)
    summary.json                 outcome per equation for the latest run
    summary-<timestamp>.json     archived copy of the same summary
    eq_<id>/dataset.csv          header = using_vars then iteration_variables
    eq_<id>/manifest.json        ranges, counts, seed, design, warnings

Column order in dataset.csv is exactly `using_vars` followed by
`iteration_variables`; downstream trainers rely on it.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

import numpy as np

from nlsurrogate.domain.models import (
    EquationRecord,
    ProfilingInfo,
    TrainingDataset,
    VariableRange,
)
from nlsurrogate.errors import InsufficientSamplesWarning
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)

DATASET_FILE = "dataset.csv"
MANIFEST_FILE = "manifest.json"
FORMAT_VERSION = 1


def equation_dir(model_dir: Path, equation_id: int) -> Path:
    return Path(model_dir) / f"eq_{equation_id}"


def _dump_json(payload: Any, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def _info_payload(info: ProfilingInfo) -> Dict[str, Any]:
    return info.model_dump(mode="json")


def manifest_payload(dataset: TrainingDataset) -> Dict[str, Any]:
    info = dataset.info
    return {
        "format_version": FORMAT_VERSION,
        "equation_id": info.equation_id,
        "profiling": info.record.model_dump(mode="json"),
        "using_vars": list(info.using_vars),
        "iteration_variables": list(info.iteration_variables),
        "inner_equations": list(info.inner_equations),
        "start_values": dict(info.start_values),
        "columns": dataset.columns,
        "ranges": [r.model_dump(mode="json") for r in dataset.ranges],
        "requested": dataset.requested,
        "samples": dataset.size,
        "attempts": dataset.attempts,
        "failures": dataset.failures,
        "failure_kinds": dict(dataset.failure_kinds),
        "cancelled": dataset.cancelled,
        "seed": dataset.seed,
        "design": dataset.design,
        "warnings": [str(w) for w in dataset.warnings],
        "stats": dataset.stats,
    }


def write_dataset(dataset: TrainingDataset, model_dir: Path) -> Path:
    """
    Write dataset.csv and manifest.json for one equation; return its directory.
    """
    target = equation_dir(model_dir, dataset.equation_id)
    target.mkdir(parents=True, exist_ok=True)

    with (target / DATASET_FILE).open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(dataset.columns)
        writer.writerows(dataset.matrix.tolist())
    _dump_json(manifest_payload(dataset), target / MANIFEST_FILE)

    log.info(
        "Dataset persisted",
        extra={"equation_id": dataset.equation_id, "path": str(target), "samples": dataset.size},
    )
    return target


def _read_matrix(path: Path, columns: List[str]) -> np.ndarray:
    with path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = next(reader, [])
        if header != columns:
            raise ValueError(f"{path} header {header} does not match manifest columns {columns}")
        rows = [[float(v) for v in row] for row in reader if row]
    if not rows:
        return np.empty((0, len(columns)), dtype=np.float64)
    return np.array(rows, dtype=np.float64)


def load_dataset(path: Path) -> TrainingDataset:
    """Read an equation directory written by `write_dataset` back into memory."""
    path = Path(path)
    with (path / MANIFEST_FILE).open("r", encoding="utf-8") as f:
        manifest = json.load(f)

    info = ProfilingInfo(
        record=EquationRecord.model_validate(manifest["profiling"]),
        using_vars=tuple(manifest["using_vars"]),
        iteration_variables=tuple(manifest["iteration_variables"]),
        inner_equations=tuple(manifest["inner_equations"]),
        start_values=manifest.get("start_values", {}),
    )
    matrix = _read_matrix(path / DATASET_FILE, list(manifest["columns"]))
    n_in = len(info.using_vars)
    warnings = tuple(
        InsufficientSamplesWarning(
            info.equation_id, manifest["samples"], manifest["requested"], manifest["attempts"]
        )
        for _ in manifest.get("warnings", [])
    )
    return TrainingDataset(
        info=info,
        ranges=tuple(VariableRange.model_validate(r) for r in manifest["ranges"]),
        inputs=matrix[:, :n_in],
        outputs=matrix[:, n_in:],
        requested=manifest["requested"],
        attempts=manifest["attempts"],
        failures=manifest["failures"],
        seed=manifest["seed"],
        design=manifest["design"],
        failure_kinds=manifest.get("failure_kinds", {}),
        cancelled=manifest.get("cancelled", False),
        warnings=warnings,
        stats=manifest.get("stats", {}),
    )


def write_profiling_info(infos: Iterable[ProfilingInfo], model_dir: Path) -> Path:
    path = Path(model_dir) / "profiling_info.json"
    _dump_json([_info_payload(info) for info in infos], path)
    return path


def read_profiling_info(path: Path) -> List[ProfilingInfo]:
    with Path(path).open("r", encoding="utf-8") as f:
        payload = json.load(f)
    return [ProfilingInfo.model_validate(item) for item in payload]


def persist_summary(payload: Dict[str, Any], model_dir: Path) -> Path:
    """Write summary.json plus a timestamped archive copy; return the latest path."""
    model_dir = Path(model_dir)
    latest_path = model_dir / "summary.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = model_dir / f"summary-{timestamp}.json"

    _dump_json(payload, latest_path)
    _dump_json(payload, archive_path)

    log.info("Summary persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})
    return latest_path


__all__ = [
    "DATASET_FILE",
    "MANIFEST_FILE",
    "equation_dir",
    "load_dataset",
    "manifest_payload",
    "persist_summary",
    "read_profiling_info",
    "write_dataset",
    "write_profiling_info",
]
