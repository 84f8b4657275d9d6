"""
Profiling trace reader.

Parses the per-equation profile written by the simulator (OpenModelica
`<model>_prof.json` layout) into EquationRecord values:

    {
      "name": "simpleLoop",
      "totalTime": 0.00395,
      "profileBlocks": [
        {"id": 14, "ncall": 2512, "time": 0.000592, "maxTime": 1.1e-06},
        ...
      ]
    }

Times are in seconds. Only reading happens here; ranking is done by
`nlsurrogate.profiling.hotspots`.
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from nlsurrogate.domain.models import EquationRecord
from nlsurrogate.errors import MalformedTraceError
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)

TraceSource = Union[str, Path, Mapping[str, Any]]


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedTraceError(f"{what} is not numeric: {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise MalformedTraceError(f"{what} is not finite: {value!r}")
    return number


def _load(source: TraceSource) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source
    path = Path(source)
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError as exc:
        raise MalformedTraceError(f"Profiling trace not found: {path}") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedTraceError(f"Profiling trace {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise MalformedTraceError(f"Profiling trace {path} must contain a JSON object")
    return payload


def simulation_total_time(source: TraceSource) -> float:
    """Return the total simulation time recorded in a trace."""
    payload = _load(source)
    if "totalTime" not in payload:
        raise MalformedTraceError("Profiling trace has no 'totalTime'")
    total = _number(payload["totalTime"], "totalTime")
    if total <= 0.0:
        raise MalformedTraceError(f"totalTime must be positive, got {total}")
    return total


def read_trace(source: TraceSource) -> Dict[int, EquationRecord]:
    """
    Read a profiling trace into a mapping from equation id to EquationRecord.

    Parameters
    ----------
    source : str | Path | Mapping
        Path to a `_prof.json` file or an already-decoded payload.

    Returns
    -------
    Dict[int, EquationRecord]
        One record per profiled block, keyed by equation id.

    Raises
    ------
    MalformedTraceError
        If timing totals are missing, counts or times are negative, or the
        payload is otherwise unreadable.
    """
    payload = _load(source)
    total = simulation_total_time(payload)

    blocks = payload.get("profileBlocks")
    if not isinstance(blocks, list):
        raise MalformedTraceError("Profiling trace has no 'profileBlocks' list")

    records: Dict[int, EquationRecord] = {}
    for position, block in enumerate(blocks):
        if not isinstance(block, Mapping):
            raise MalformedTraceError(f"profileBlocks[{position}] is not an object")
        missing = [key for key in ("id", "ncall", "time") if key not in block]
        if missing:
            raise MalformedTraceError(f"profileBlocks[{position}] is missing {missing}")

        raw_id = block["id"]
        if isinstance(raw_id, bool) or not isinstance(raw_id, int):
            raise MalformedTraceError(f"profileBlocks[{position}].id is not an integer")
        ncall = _number(block["ncall"], f"profileBlocks[{position}].ncall")
        time_spent = _number(block["time"], f"profileBlocks[{position}].time")
        if ncall < 0 or not ncall.is_integer():
            raise MalformedTraceError(f"Equation {raw_id}: invalid call count {block['ncall']!r}")
        if time_spent < 0:
            raise MalformedTraceError(f"Equation {raw_id}: negative time {time_spent}")
        max_time = None
        if block.get("maxTime") is not None:
            max_time = _number(block["maxTime"], f"profileBlocks[{position}].maxTime")
            if max_time < 0:
                raise MalformedTraceError(f"Equation {raw_id}: negative maxTime {max_time}")
        if raw_id in records:
            raise MalformedTraceError(f"Equation {raw_id} appears more than once")

        records[raw_id] = EquationRecord(
            id=raw_id,
            call_count=int(ncall),
            total_time=time_spent,
            max_time=max_time,
            # Timer resolution can push a block slightly past the total.
            fraction_of_total=min(time_spent / total, 1.0),
        )

    log.debug(
        "Profiling trace parsed",
        extra={"equations": len(records), "total_time": total},
    )
    return records


__all__ = ["read_trace", "simulation_total_time", "TraceSource"]
