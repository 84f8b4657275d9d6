"""
Range discovery: min/max of variables over the reference simulation.

The reference result is streamed once, keeping a running minimum and maximum
per requested variable. Bounds are then widened by a relative margin so
training data covers states slightly beyond the observed trajectory:

    min' = min - margin * |min|        (min - absolute_margin when min == 0)
    max' = max + margin * |max|        (max + absolute_margin when max == 0)

A zero observed span always ends up with min' < max'.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from nlsurrogate.config import get_settings
from nlsurrogate.domain.models import VariableRange
from nlsurrogate.errors import RangeDiscoveryError
from nlsurrogate.simulation import (
    ReferenceSimulationCache,
    ResultFileSource,
    SimulationSource,
    iter_result_rows,
    read_result_header,
)
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)


def _widen_low(value: float, margin: float, absolute_margin: float) -> float:
    if value == 0.0:
        return -absolute_margin
    return value - margin * abs(value)


def _widen_high(value: float, margin: float, absolute_margin: float) -> float:
    if value == 0.0:
        return absolute_margin
    return value + margin * abs(value)


def apply_margin(
    name: str,
    observed_min: float,
    observed_max: float,
    margin: float,
    absolute_margin: float,
) -> VariableRange:
    """
    Build a VariableRange from raw observed bounds.

    Parameters
    ----------
    margin : float
        Relative widening applied to non-zero bounds (0.01 = 1%).
    absolute_margin : float
        Additive widening for bounds that are exactly zero, and the fallback
        when the relative margin leaves an empty range.
    """
    if margin < 0:
        raise ValueError(f"margin must be non-negative, got {margin}")
    if absolute_margin <= 0:
        raise ValueError(f"absolute_margin must be positive, got {absolute_margin}")

    low = _widen_low(observed_min, margin, absolute_margin)
    high = _widen_high(observed_max, margin, absolute_margin)
    if not low < high:
        low = observed_min - absolute_margin
        high = observed_max + absolute_margin
    if not low < high:
        # absolute_margin vanishes next to very large magnitudes
        low = math.nextafter(observed_min, -math.inf)
        high = math.nextafter(observed_max, math.inf)
    return VariableRange(
        name=name,
        min=low,
        max=high,
        observed_min=observed_min,
        observed_max=observed_max,
    )


def _result_path(
    source: Union[SimulationSource, Path, str],
    cache: Optional[ReferenceSimulationCache],
) -> Path:
    if isinstance(source, (str, Path)):
        source = ResultFileSource(Path(source))
    if cache is not None:
        return cache.get(source)
    return source.run()


def observe_extrema(
    variables: Iterable[str], result_path: Path
) -> Dict[str, tuple[float, float]]:
    """
    Stream a result file once and return the raw (min, max) per variable.

    Non-finite values are ignored.

    Raises
    ------
    RangeDiscoveryError
        If a variable is not a column of the result, or never takes a finite value.
    """
    names = list(dict.fromkeys(variables))
    header = set(read_result_header(result_path))
    missing = [name for name in names if name not in header]
    if missing:
        raise RangeDiscoveryError(missing, "not present in the simulation result")

    lows: List[float] = [math.inf] * len(names)
    highs: List[float] = [-math.inf] * len(names)
    skipped = 0
    for row in iter_result_rows(result_path, names):
        for i, value in enumerate(row):
            if not math.isfinite(value):
                skipped += 1
                continue
            if value < lows[i]:
                lows[i] = value
            if value > highs[i]:
                highs[i] = value

    if skipped:
        log.warning(
            "Ignored non-finite values in simulation result",
            extra={"result": str(result_path), "values": skipped},
        )
    empty = [name for name, low in zip(names, lows) if low == math.inf]
    if empty:
        raise RangeDiscoveryError(empty, "no finite values in the simulation result")
    return {name: (low, high) for name, low, high in zip(names, lows, highs)}


def discover_ranges(
    variables: Iterable[str],
    source: Union[SimulationSource, Path, str],
    *,
    margin: Optional[float] = None,
    absolute_margin: Optional[float] = None,
    cache: Optional[ReferenceSimulationCache] = None,
) -> Dict[str, VariableRange]:
    """
    Discover sampling ranges for `variables` from a reference simulation.

    Parameters
    ----------
    variables : iterable[str]
        Variable names; the returned mapping preserves their order.
    source : SimulationSource | Path | str
        Simulation to run, or an existing result file.
    margin, absolute_margin : float | None
        Widening parameters; default to settings.range_margin and
        settings.range_absolute_margin.
    cache : ReferenceSimulationCache | None
        Shared memo of reference runs; the source is run directly when omitted.

    Raises
    ------
    SimulationFailureError
        If the reference run does not complete (no retry here).
    RangeDiscoveryError
        If a variable cannot be bounded from the result.
    """
    settings = get_settings()
    margin = settings.range_margin if margin is None else margin
    absolute_margin = (
        settings.range_absolute_margin if absolute_margin is None else absolute_margin
    )

    names = list(dict.fromkeys(variables))
    if not names:
        return {}
    result_path = _result_path(source, cache)
    extrema = observe_extrema(names, result_path)
    ranges = {
        name: apply_margin(name, low, high, margin, absolute_margin)
        for name, (low, high) in extrema.items()
    }
    log.debug(
        "Ranges discovered",
        extra={"variables": len(ranges), "result": str(result_path), "margin": margin},
    )
    return ranges


__all__ = ["apply_margin", "discover_ranges", "observe_extrema"]
