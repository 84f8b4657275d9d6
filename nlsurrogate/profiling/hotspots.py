"""
Hotspot selection: rank equation records by their share of simulation time.
"""

from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Union

from nlsurrogate.config import get_settings
from nlsurrogate.domain.models import EquationRecord

Records = Union[Mapping[int, EquationRecord], Iterable[EquationRecord]]


def select_hotspots(
    records: Records,
    threshold: Optional[float] = None,
    *,
    candidates: Optional[Iterable[int]] = None,
) -> List[EquationRecord]:
    """
    Return the records whose fraction of total time is at least `threshold`.

    Parameters
    ----------
    records : mapping or iterable of EquationRecord
        Output of `read_trace` (or any collection of records).
    threshold : float | None
        Minimum `fraction_of_total`. Defaults to settings.hotspot_threshold.
        `0` keeps every candidate record.
    candidates : iterable[int] | None
        Restrict the selection to these equation ids (e.g. the top-level
        non-linear systems of the model). None keeps every record.

    Returns
    -------
    List[EquationRecord]
        Sorted by fraction descending, ties broken by ascending id. May be empty.
    """
    if threshold is None:
        threshold = get_settings().hotspot_threshold
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"threshold must be within [0, 1], got {threshold}")

    values = records.values() if isinstance(records, Mapping) else records
    allowed = set(candidates) if candidates is not None else None

    unique: dict[int, EquationRecord] = {}
    for record in values:
        if allowed is not None and record.id not in allowed:
            continue
        unique.setdefault(record.id, record)

    selected = [r for r in unique.values() if r.fraction_of_total >= threshold]
    selected.sort(key=lambda r: (-r.fraction_of_total, r.id))
    return selected


__all__ = ["select_hotspots"]
