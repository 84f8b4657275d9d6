"""
Domain package for nlsurrogate.

Exports the core domain models passed between pipeline stages.
Keep this package focused on data definitions and validation concerns.
"""

from nlsurrogate.domain.models import (
    EquationOutcome,
    EquationRecord,
    ProfilingInfo,
    TrainingDataset,
    TrainingSample,
    VariableRange,
)

__all__ = [
    "EquationOutcome",
    "EquationRecord",
    "ProfilingInfo",
    "TrainingDataset",
    "TrainingSample",
    "VariableRange",
]
