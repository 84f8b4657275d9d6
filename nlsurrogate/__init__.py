"""
nlsurrogate - training data generation for non-linear equation surrogates.

Given a profiled simulation of an equation-based model, this package:

- Reads the per-equation profiling trace and picks the non-linear systems
  that dominate simulation time
- Resolves each system's inputs (usingVars) and outputs (iteration variables)
  from the model structure
- Bounds every input from one reference simulation
- Samples inputs, solves the isolated system for each and keeps the
  converged (input, output) pairs as a training dataset

The datasets are written per equation so an external trainer can fit a
surrogate that replaces the iterative solve.
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from nlsurrogate.analysis import ModelStructure, load_structure, resolve
from nlsurrogate.artifacts import load_dataset, write_dataset
from nlsurrogate.config import Settings, get_settings
from nlsurrogate.domain import (
    EquationOutcome,
    EquationRecord,
    ProfilingInfo,
    TrainingDataset,
    TrainingSample,
    VariableRange,
)
from nlsurrogate.evaluators import CallableEvaluator, CommandEvaluator, EvaluationResult
from nlsurrogate.orchestrator import PipelineConfig, PipelineReport, run_pipeline
from nlsurrogate.profiling import read_trace, select_hotspots
from nlsurrogate.ranges import discover_ranges
from nlsurrogate.sampling import generate
from nlsurrogate.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "Settings",
    "get_settings",
    # Pipeline stages
    "read_trace",
    "select_hotspots",
    "load_structure",
    "ModelStructure",
    "resolve",
    "discover_ranges",
    "generate",
    # Orchestration
    "PipelineConfig",
    "PipelineReport",
    "run_pipeline",
    # Evaluators
    "CallableEvaluator",
    "CommandEvaluator",
    "EvaluationResult",
    # Data models
    "EquationOutcome",
    "EquationRecord",
    "ProfilingInfo",
    "TrainingDataset",
    "TrainingSample",
    "VariableRange",
    # Artifacts
    "load_dataset",
    "write_dataset",
    # Logging
    "configure_logging",
    "get_logger",
]
