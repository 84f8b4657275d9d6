"""
Error taxonomy for the non-linear subsystem pipeline.

Trace-level and whole-model failures (malformed trace, malformed model
structure, reference simulation failure) are fatal for a run and propagate to
the caller. Everything else is scoped to a single equation or a single sample
and is turned into an outcome or a counter by the orchestrator and generator.
"""

from __future__ import annotations

from typing import Optional


class NlSurrogateError(Exception):
    """Base class for all pipeline errors."""


class MalformedTraceError(NlSurrogateError):
    """Raised when a profiling trace cannot be parsed into equation records."""


class MalformedModelStructureError(NlSurrogateError):
    """Raised when the model structure file is unreadable or has no equation list."""


class UnresolvableDependencyError(NlSurrogateError):
    """
    Raised when an equation id does not map to a well-formed non-linear block.

    Typical cause is a stale identifier after the model was regenerated.
    """

    def __init__(self, equation_id: int, reason: str) -> None:
        super().__init__(f"Equation {equation_id}: {reason}")
        self.equation_id = equation_id
        self.reason = reason


class SimulationFailureError(NlSurrogateError):
    """Raised when the reference simulation does not complete."""

    def __init__(self, message: str, *, model_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.model_id = model_id


class RangeDiscoveryError(NlSurrogateError):
    """Raised when a requested variable has no usable values in the reference result."""

    def __init__(self, variables: list[str], reason: str) -> None:
        super().__init__(f"{reason}: {', '.join(variables)}")
        self.variables = variables
        self.reason = reason


class EvaluatorTimeoutError(NlSurrogateError):
    """A single subsystem evaluation exceeded its time budget."""


class EvaluatorConvergenceFailure(NlSurrogateError):
    """A single subsystem evaluation did not converge."""


class InsufficientSamplesWarning(UserWarning):
    """
    Emitted when a dataset is returned short of its requested sample count.

    Attached to the dataset rather than raised so partial datasets stay usable.
    """

    def __init__(self, equation_id: int, collected: int, requested: int, attempts: int) -> None:
        super().__init__(
            f"Equation {equation_id}: collected {collected}/{requested} converged samples "
            f"after {attempts} attempts"
        )
        self.equation_id = equation_id
        self.collected = collected
        self.requested = requested
        self.attempts = attempts

    @property
    def shortfall(self) -> int:
        return self.requested - self.collected


__all__ = [
    "NlSurrogateError",
    "MalformedTraceError",
    "MalformedModelStructureError",
    "UnresolvableDependencyError",
    "SimulationFailureError",
    "RangeDiscoveryError",
    "EvaluatorTimeoutError",
    "EvaluatorConvergenceFailure",
    "InsufficientSamplesWarning",
]
