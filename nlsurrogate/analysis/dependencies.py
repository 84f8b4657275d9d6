"""
Dependency resolution for non-linear equation systems.

For a selected system the resolver splits the variables it touches into
inputs (`using_vars`: referenced inside the block but never assigned there)
and outputs (`iteration_variables`: the unknowns of the iterative solve).
Nested equations, including nested systems, are folded into
`inner_equations` because their values follow from the parent's inputs.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple, Union

from nlsurrogate.analysis.structure import ModelStructure
from nlsurrogate.domain.models import EquationRecord, ProfilingInfo
from nlsurrogate.errors import UnresolvableDependencyError
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)

TIME_VARIABLE = "time"


def _placeholder_record(equation_id: int) -> EquationRecord:
    return EquationRecord(id=equation_id, call_count=0, total_time=0.0, fraction_of_total=0.0)


def resolve(
    equation_id: int,
    structure: ModelStructure,
    *,
    record: Optional[EquationRecord] = None,
    include_time: bool = True,
) -> ProfilingInfo:
    """
    Compute the input/output split of one non-linear system.

    Parameters
    ----------
    equation_id : int
        Index of the system in the model structure.
    structure : ModelStructure
        Equation graph of the model.
    record : EquationRecord | None
        Profiling statistics to attach. A zeroed record is used when omitted.
    include_time : bool
        Keep the simulation time as an input when the block reads it.

    Raises
    ------
    UnresolvableDependencyError
        If the id is unknown, not a top-level non-linear system, or the
        system has no unknowns.
    """
    block = structure.get(equation_id)
    if block is None:
        raise UnresolvableDependencyError(equation_id, "not present in the model structure")
    if not block.is_system:
        raise UnresolvableDependencyError(
            equation_id, f"is a '{block.tag or 'unknown'}' equation, not an equation system"
        )
    if not block.is_nonlinear_system:
        raise UnresolvableDependencyError(
            equation_id, f"is a {block.display or 'untyped'} system, not a non-linear one"
        )
    if block.parent is not None:
        raise UnresolvableDependencyError(
            equation_id, f"is nested inside system {block.parent} and solved with it"
        )

    iteration_variables: Tuple[str, ...] = tuple(dict.fromkeys(block.defines))
    if not iteration_variables:
        raise UnresolvableDependencyError(equation_id, "has no iteration variables")

    inner = structure.descendants(equation_id)
    assigned: set[str] = set(iteration_variables)
    referenced: Dict[str, None] = dict.fromkeys(block.uses)
    for index in inner:
        child = structure.blocks[index]
        assigned.update(child.defines)
        referenced.update(dict.fromkeys(child.uses))

    using_vars = tuple(
        name
        for name in referenced
        if name not in assigned and (include_time or name != TIME_VARIABLE)
    )

    start_values = {}
    for name in iteration_variables:
        start = structure.start_value(name)
        start_values[name] = 0.0 if start is None else start

    info = ProfilingInfo(
        record=record if record is not None else _placeholder_record(equation_id),
        using_vars=using_vars,
        iteration_variables=iteration_variables,
        inner_equations=tuple(inner),
        start_values=start_values,
    )
    log.debug(
        f"[RESOLVED] equation {equation_id}",
        extra={
            "equation_id": equation_id,
            "using_vars": list(using_vars),
            "iteration_variables": list(iteration_variables),
            "inner_equations": list(inner),
        },
    )
    return info


def resolve_many(
    items: Iterable[Union[int, EquationRecord]],
    structure: ModelStructure,
    *,
    include_time: bool = True,
) -> Tuple[List[ProfilingInfo], Dict[int, UnresolvableDependencyError]]:
    """
    Resolve several equations, isolating failures.

    Returns the resolved infos (input order preserved) and a mapping of
    equation id to the error for every equation that was skipped.
    """
    infos: List[ProfilingInfo] = []
    failures: Dict[int, UnresolvableDependencyError] = {}
    for item in items:
        record = item if isinstance(item, EquationRecord) else None
        equation_id = item.id if isinstance(item, EquationRecord) else int(item)
        try:
            infos.append(
                resolve(equation_id, structure, record=record, include_time=include_time)
            )
        except UnresolvableDependencyError as exc:
            log.warning(
                f"[SKIPPED] equation {equation_id}: {exc.reason}",
                extra={"equation_id": equation_id, "reason": exc.reason},
            )
            failures[equation_id] = exc
    return infos, failures


__all__ = ["TIME_VARIABLE", "resolve", "resolve_many"]
