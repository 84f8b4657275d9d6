from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path

import pytest

from nlsurrogate.errors import RangeDiscoveryError, SimulationFailureError
from nlsurrogate.ranges import apply_margin, discover_ranges, observe_extrema
from nlsurrogate.simulation import ReferenceSimulationCache, ResultFileSource

MARGIN = 0.01
ABSOLUTE_MARGIN = 1e-3


@dataclass
class _CountingSource:
    path: Path
    model_id: str = "simpleLoop"
    runs: int = 0

    def run(self) -> Path:
        self.runs += 1
        return self.path


def _write_columns(path: Path, header: list[str], rows: list[list[object]]) -> Path:
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)
    return path


def test_apply_margin_widens_relative_to_magnitude() -> None:
    r = apply_margin("r", 1.0, 2.0, MARGIN, ABSOLUTE_MARGIN)

    assert r.min == pytest.approx(0.99)
    assert r.max == pytest.approx(2.02)
    assert (r.observed_min, r.observed_max) == (1.0, 2.0)


def test_apply_margin_widens_negative_bounds_outward() -> None:
    r = apply_margin("v", -2.0, -1.0, MARGIN, ABSOLUTE_MARGIN)

    assert r.min == pytest.approx(-2.02)
    assert r.max == pytest.approx(-0.99)


def test_apply_margin_constant_zero_gets_absolute_width() -> None:
    r = apply_margin("s", 0.0, 0.0, MARGIN, ABSOLUTE_MARGIN)

    assert r.min == -ABSOLUTE_MARGIN
    assert r.max == ABSOLUTE_MARGIN


def test_apply_margin_constant_nonzero_is_never_empty() -> None:
    r = apply_margin("c", 5.0, 5.0, MARGIN, ABSOLUTE_MARGIN)
    no_margin = apply_margin("c", 5.0, 5.0, 0.0, ABSOLUTE_MARGIN)

    assert r.min < 5.0 < r.max
    assert no_margin.min == pytest.approx(5.0 - ABSOLUTE_MARGIN)
    assert no_margin.max == pytest.approx(5.0 + ABSOLUTE_MARGIN)


def test_apply_margin_huge_constant_falls_back_to_next_float() -> None:
    r = apply_margin("big", 1e300, 1e300, 0.0, ABSOLUTE_MARGIN)

    assert r.min < 1e300 < r.max


def test_apply_margin_rejects_invalid_margins() -> None:
    with pytest.raises(ValueError, match="margin"):
        apply_margin("x", 0.0, 1.0, -0.1, ABSOLUTE_MARGIN)
    with pytest.raises(ValueError, match="absolute_margin"):
        apply_margin("x", 0.0, 1.0, MARGIN, 0.0)


def test_discover_ranges_contains_observed_trajectory(simple_loop_files) -> None:
    ranges = discover_ranges(["s", "r"], simple_loop_files.result, margin=MARGIN)

    assert list(ranges) == ["s", "r"]
    s, r = ranges["s"], ranges["r"]
    assert (s.observed_min, s.observed_max) == pytest.approx((0.5, 1.0))
    assert s.min == pytest.approx(0.495)
    assert s.max == pytest.approx(1.01)
    assert r.min <= r.observed_min <= r.observed_max <= r.max


def test_discover_ranges_constant_zero_variable(tmp_path: Path) -> None:
    result = _write_columns(tmp_path / "m_res.csv", ["time", "s"], [[0.0, 0.0], [1.0, 0.0]])

    ranges = discover_ranges(["s"], result, margin=MARGIN, absolute_margin=ABSOLUTE_MARGIN)

    assert (ranges["s"].min, ranges["s"].max) == (-ABSOLUTE_MARGIN, ABSOLUTE_MARGIN)


def test_discover_ranges_is_idempotent_and_simulates_once(simple_loop_files) -> None:
    source = _CountingSource(simple_loop_files.result)
    cache = ReferenceSimulationCache()

    first = discover_ranges(["s", "r"], source, cache=cache)
    second = discover_ranges(["r", "s"], source, cache=cache)

    assert source.runs == 1
    assert first["s"] == second["s"]
    assert first["r"] == second["r"]
    assert "simpleLoop" in cache


def test_discover_ranges_missing_variable(simple_loop_files) -> None:
    with pytest.raises(RangeDiscoveryError) as excinfo:
        discover_ranges(["s", "nope"], simple_loop_files.result)

    assert excinfo.value.variables == ["nope"]


def test_observe_extrema_ignores_non_finite_values(tmp_path: Path) -> None:
    result = _write_columns(
        tmp_path / "m_res.csv",
        ["time", "a", "b"],
        [[0.0, 1.0, "nan"], [1.0, "inf", "nan"], [2.0, 3.0, "-"]],
    )

    assert observe_extrema(["a"], result) == {"a": (1.0, 3.0)}
    with pytest.raises(RangeDiscoveryError, match="no finite values"):
        observe_extrema(["a", "b"], result)


def test_discover_ranges_propagates_simulation_failure(tmp_path: Path) -> None:
    with pytest.raises(SimulationFailureError, match="does not exist"):
        discover_ranges(["s"], ResultFileSource(tmp_path / "missing_res.csv"))


def test_discover_ranges_empty_variable_list_needs_no_simulation(tmp_path: Path) -> None:
    source = _CountingSource(tmp_path / "unused.csv")

    assert discover_ranges([], source) == {}
    assert source.runs == 0
