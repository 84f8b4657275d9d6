"""
Domain models for nlsurrogate.

Defines the records that flow forward through the pipeline:
EquationRecord (trace) -> ProfilingInfo (dependencies) -> VariableRange
(ranges) -> TrainingDataset (samples) -> EquationOutcome (orchestrator).
Every stage produces a new immutable value from its input.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Literal, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator

from nlsurrogate.errors import InsufficientSamplesWarning

_FROZEN = {
    "frozen": True,
    "populate_by_name": True,
    "arbitrary_types_allowed": False,
}


class EquationRecord(BaseModel):
    """
    Profiling statistics of one equation block in one simulation run.
    """

    id: int = Field(..., description="Equation index assigned by the model compiler.")
    call_count: int = Field(..., ge=0, description="Number of times the block was evaluated.")
    total_time: float = Field(..., ge=0.0, description="Cumulative time spent in the block (s).")
    max_time: Optional[float] = Field(None, ge=0.0, description="Slowest single call (s).")
    fraction_of_total: float = Field(
        ..., ge=0.0, le=1.0, description="total_time / total simulation time."
    )

    model_config = _FROZEN


class ProfilingInfo(BaseModel):
    """
    A selected equation block enriched with its input/output split.

    `using_vars` fixes the input column order of the training data and
    `iteration_variables` the output column order.
    """

    record: EquationRecord
    using_vars: Tuple[str, ...] = Field(..., description="External variables read by the block.")
    iteration_variables: Tuple[str, ...] = Field(..., description="Unknowns solved by the block.")
    inner_equations: Tuple[int, ...] = Field(default=(), description="Nested equation ids.")
    start_values: Dict[str, float] = Field(
        default_factory=dict, description="Nominal start value per iteration variable."
    )

    model_config = _FROZEN

    @model_validator(mode="after")
    def _check_variable_split(self) -> "ProfilingInfo":
        if not self.iteration_variables:
            raise ValueError(f"equation {self.record.id} has no iteration variables")
        overlap = set(self.using_vars) & set(self.iteration_variables)
        if overlap:
            raise ValueError(
                f"equation {self.record.id} reads and solves the same variables: {sorted(overlap)}"
            )
        if len(set(self.using_vars)) != len(self.using_vars):
            raise ValueError(f"equation {self.record.id} has duplicate using_vars")
        if len(set(self.iteration_variables)) != len(self.iteration_variables):
            raise ValueError(f"equation {self.record.id} has duplicate iteration_variables")
        return self

    @property
    def equation_id(self) -> int:
        return self.record.id

    def initial_guess(self, policy: str = "start") -> Tuple[float, ...]:
        """Return the pinned starting point for the iterative solve."""
        if policy == "zeros":
            return tuple(0.0 for _ in self.iteration_variables)
        if policy == "start":
            return tuple(float(self.start_values.get(v, 0.0)) for v in self.iteration_variables)
        raise ValueError(f"Unknown initial guess policy '{policy}'")


class VariableRange(BaseModel):
    """
    Sampling bounds for one variable, widened by a safety margin.
    """

    name: str
    min: float
    max: float
    observed_min: float
    observed_max: float

    model_config = _FROZEN

    @model_validator(mode="after")
    def _check_bounds(self) -> "VariableRange":
        for value in (self.min, self.max, self.observed_min, self.observed_max):
            if not math.isfinite(value):
                raise ValueError(f"range for '{self.name}' is not finite")
        if not self.min < self.max:
            raise ValueError(f"range for '{self.name}' is empty: [{self.min}, {self.max}]")
        if self.observed_min > self.observed_max:
            raise ValueError(f"observed range for '{self.name}' is inverted")
        return self

    @property
    def span(self) -> float:
        return self.max - self.min


class TrainingSample(BaseModel):
    """One converged input/output pair."""

    inputs: Tuple[float, ...]
    outputs: Tuple[float, ...]

    model_config = _FROZEN

    @field_validator("inputs", "outputs")
    @classmethod
    def _finite(cls, values: Tuple[float, ...]) -> Tuple[float, ...]:
        if not all(math.isfinite(v) for v in values):
            raise ValueError("sample contains non-finite values")
        return values


def _as_matrix(values: object, columns: int) -> np.ndarray:
    matrix = np.array(values, dtype=np.float64)
    if matrix.ndim != 2:
        if matrix.size == 0:
            return np.empty((0, columns), dtype=np.float64)
        matrix = matrix.reshape(-1, columns)
    if matrix.shape[1] != columns:
        raise ValueError(f"expected {columns} columns, got {matrix.shape[1]}")
    return matrix


@dataclass(frozen=True, eq=False)
class TrainingDataset:
    """
    All converged samples generated for one ProfilingInfo.

    `inputs` has one column per `info.using_vars` entry and `outputs` one
    column per `info.iteration_variables` entry. Both arrays are read-only.
    """

    info: ProfilingInfo
    ranges: Tuple[VariableRange, ...]
    inputs: np.ndarray
    outputs: np.ndarray
    requested: int
    attempts: int
    failures: int
    seed: int
    design: str
    failure_kinds: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    warnings: Tuple[InsufficientSamplesWarning, ...] = ()
    stats: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        n_in = len(self.info.using_vars)
        n_out = len(self.info.iteration_variables)
        inputs = _as_matrix(self.inputs, n_in)
        outputs = _as_matrix(self.outputs, n_out)
        if inputs.shape[0] != outputs.shape[0]:
            raise ValueError("inputs and outputs must have the same number of rows")
        if inputs.shape[0] > self.requested:
            raise ValueError("dataset holds more samples than requested")
        if tuple(r.name for r in self.ranges) != self.info.using_vars:
            raise ValueError("ranges must be aligned with using_vars")
        inputs.flags.writeable = False
        outputs.flags.writeable = False
        object.__setattr__(self, "inputs", inputs)
        object.__setattr__(self, "outputs", outputs)

    @property
    def equation_id(self) -> int:
        return self.info.equation_id

    @property
    def size(self) -> int:
        return int(self.inputs.shape[0])

    @property
    def columns(self) -> List[str]:
        return [*self.info.using_vars, *self.info.iteration_variables]

    @property
    def matrix(self) -> np.ndarray:
        """Input columns followed by output columns."""
        return np.hstack([self.inputs, self.outputs])

    @property
    def shortfall(self) -> int:
        return self.requested - self.size

    @property
    def samples(self) -> Iterator[TrainingSample]:
        for x, y in zip(self.inputs, self.outputs):
            yield TrainingSample(inputs=tuple(float(v) for v in x), outputs=tuple(float(v) for v in y))


OutcomeStatus = Literal["success", "skipped", "failed", "cancelled"]


@dataclass(frozen=True)
class EquationOutcome:
    """Tagged per-equation result collected into the pipeline report."""

    equation_id: int
    status: OutcomeStatus
    reason: Optional[str] = None
    dataset: Optional[TrainingDataset] = None
    artifact_dir: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def summary(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "equation_id": self.equation_id,
            "status": self.status,
            "reason": self.reason,
            "artifact_dir": str(self.artifact_dir) if self.artifact_dir else None,
        }
        if self.dataset is not None:
            payload.update(
                {
                    "samples": self.dataset.size,
                    "requested": self.dataset.requested,
                    "attempts": self.dataset.attempts,
                    "failures": self.dataset.failures,
                    "warnings": [str(w) for w in self.dataset.warnings],
                }
            )
        return payload


__all__ = [
    "EquationRecord",
    "ProfilingInfo",
    "VariableRange",
    "TrainingSample",
    "TrainingDataset",
    "EquationOutcome",
    "OutcomeStatus",
]
