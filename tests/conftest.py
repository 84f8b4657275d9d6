"""
Pytest configuration for nlsurrogate.

Provides fixtures for:
- The `simpleLoop` model (r^2 = x^2 + y^2, r*s = x + y) as profiling trace,
  model structure and reference result, both as payloads and as files
- A closed-form evaluator for its non-linear system
- Settings/cache isolation between tests
"""

from __future__ import annotations

import csv
import json
import math
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict

import numpy as np
import pytest

from nlsurrogate.analysis import load_structure, resolve
from nlsurrogate.config import get_settings
from nlsurrogate.domain.models import ProfilingInfo
from nlsurrogate.evaluators import CallableEvaluator
from nlsurrogate.profiling import read_trace
from nlsurrogate.ranges import discover_ranges

MODEL_NAME = "simpleLoop"
TOTAL_TIME = 0.00395
SYSTEM_ID = 14
RESULT_STEPS = 11


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """
    Keep environment overrides from leaking between tests.
    """
    for key in ("NLS_EXECUTOR", "NLS_SAMPLE_COUNT", "NLS_SEED", "NLS_WORKERS"):
        monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def prof_payload() -> Dict[str, Any]:
    """
    Profiling trace of simpleLoop: system 14 takes 15% of 3.95 ms.
    """
    return {
        "name": MODEL_NAME,
        "totalTime": TOTAL_TIME,
        "profileBlocks": [
            {"id": 12, "ncall": 2512, "time": 0.0000395, "maxTime": 1.0e-7},
            {"id": 13, "ncall": 2512, "time": 0.0000790, "maxTime": 1.0e-7},
            {"id": 14, "ncall": 2512, "time": 0.0005925, "maxTime": 2.1e-6},
            {"id": 15, "ncall": 9980, "time": 0.0003160, "maxTime": 4.0e-7},
            {"id": 16, "ncall": 9980, "time": 0.0000790, "maxTime": 3.0e-7},
        ],
    }


@pytest.fixture
def info_payload() -> Dict[str, Any]:
    """
    Equation graph of simpleLoop as exported in `<model>_info.json`.
    """
    return {
        "info": {"name": MODEL_NAME},
        "variables": {
            "r": {"kind": "variable"},
            "s": {"kind": "variable"},
            "x": {"kind": "variable", "start": 0.0},
            "y": {"kind": "variable", "start": 0.5},
        },
        "equations": [
            {"eqIndex": 12, "tag": "assign", "defines": ["r"], "uses": ["time"]},
            {"eqIndex": 13, "tag": "assign", "defines": ["s"], "uses": ["time"]},
            {"eqIndex": 14, "tag": "system", "display": "non-linear", "defines": ["y"]},
            {
                "eqIndex": 15,
                "parent": 14,
                "tag": "assign",
                "defines": ["x"],
                "uses": ["s", "r", "y"],
            },
            {"eqIndex": 16, "parent": 14, "tag": "residual", "uses": ["r", "x", "y"]},
        ],
    }


def write_result_csv(path: Path, steps: int = RESULT_STEPS) -> Path:
    """
    Reference trajectory: r = 1 + t, s = 0.5 + 0.5 t on t in [0, 1].
    """
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["time", "r", "s", "x", "y"])
        for i in range(steps):
            t = i / (steps - 1)
            r = 1.0 + t
            s = 0.5 + 0.5 * t
            y = solve_y(r, s)
            writer.writerow([t, r, s, r * s - y, y])
    return path


def solve_y(r: float, s: float) -> float:
    """Larger root of x + y = r s, x^2 + y^2 = r^2; NaN when none exists."""
    p = r * s
    disc = 2.0 * r * r - p * p
    if disc < 0.0:
        return math.nan
    return (p + math.sqrt(disc)) / 2.0


def simple_loop_solver(inputs: np.ndarray, initial_guess: np.ndarray):
    s, r = float(inputs[0]), float(inputs[1])
    y = solve_y(r, s)
    if math.isnan(y):
        return False, []
    return True, [y]


@pytest.fixture
def simple_loop_files(tmp_path: Path, prof_payload, info_payload) -> SimpleNamespace:
    """
    simpleLoop simulator output laid out the way omc writes it.
    """
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    trace = work_dir / f"{MODEL_NAME}_prof.json"
    structure = work_dir / f"{MODEL_NAME}_info.json"
    trace.write_text(json.dumps(prof_payload), encoding="utf-8")
    structure.write_text(json.dumps(info_payload), encoding="utf-8")
    result = write_result_csv(work_dir / f"{MODEL_NAME}_res.csv")
    return SimpleNamespace(
        work_dir=work_dir,
        trace=trace,
        structure=structure,
        result=result,
        results_dir=tmp_path / "results",
    )


@pytest.fixture
def simple_loop_info(prof_payload, info_payload) -> ProfilingInfo:
    records = read_trace(prof_payload)
    return resolve(SYSTEM_ID, load_structure(info_payload), record=records[SYSTEM_ID])


@pytest.fixture
def simple_loop_ranges(simple_loop_files, simple_loop_info):
    return discover_ranges(simple_loop_info.using_vars, simple_loop_files.result)


@pytest.fixture
def simple_loop_evaluator() -> CallableEvaluator:
    return CallableEvaluator(simple_loop_solver, reentrant=True)


@pytest.fixture
def simple_loop_factory(simple_loop_evaluator):
    def factory(info: ProfilingInfo) -> CallableEvaluator:
        del info
        return simple_loop_evaluator

    return factory
