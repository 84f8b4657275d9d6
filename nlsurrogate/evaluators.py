"""
Single-subsystem evaluator interface.

An evaluator solves one isolated non-linear system: given values for the
system's `using_vars` and a starting point for its `iteration_variables`, it
reports whether the solve converged and, if so, the solved values. The
pipeline never looks inside an evaluator.

Evaluators used with the `processes` executor must be picklable. Set
`reentrant = True` only for evaluators that are safe to call from several
threads at once; the `threads` executor serializes everything else.
"""

from __future__ import annotations

import importlib
import json
import math
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    List,
    Literal,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import numpy as np

from nlsurrogate.domain.models import ProfilingInfo
from nlsurrogate.errors import EvaluatorConvergenceFailure, EvaluatorTimeoutError

EvaluationStatus = Literal["converged", "failed", "timeout", "error"]


@dataclass(frozen=True)
class EvaluationResult:
    """Status and outputs of one evaluation, outputs aligned with iteration_variables."""

    status: EvaluationStatus
    outputs: Tuple[float, ...] = ()
    detail: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.status == "converged"

    @classmethod
    def ok(cls, outputs: Sequence[float]) -> "EvaluationResult":
        return cls(status="converged", outputs=tuple(float(v) for v in outputs))

    @classmethod
    def failed(cls, detail: Optional[str] = None) -> "EvaluationResult":
        return cls(status="failed", detail=detail)


@runtime_checkable
class Evaluator(Protocol):
    """
    Common interface of every single-subsystem evaluator.

    Attributes
    ----------
    reentrant : bool
        Whether concurrent calls from several threads are safe.
    """

    reentrant: bool

    def evaluate(
        self, inputs: Sequence[float], initial_guess: Sequence[float]
    ) -> EvaluationResult:
        """
        Solve the subsystem for fixed `inputs` starting from `initial_guess`.
        """
        ...


EvaluatorFactory = Callable[[ProfilingInfo], Evaluator]


def _coerce(value: Any) -> EvaluationResult:
    if isinstance(value, EvaluationResult):
        return value
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], (bool, str)):
        status, outputs = value
        if status is True or status == "converged":
            return EvaluationResult.ok(np.asarray(outputs, dtype=np.float64).ravel())
        return EvaluationResult.failed(None if isinstance(status, bool) else str(status))
    return EvaluationResult.ok(np.asarray(value, dtype=np.float64).ravel())


@dataclass(frozen=True)
class CallableEvaluator:
    """
    Wrap a Python callable `func(inputs, initial_guess)`.

    The callable may return an EvaluationResult, a `(converged, outputs)`
    pair, or just the outputs (meaning converged). Raising
    EvaluatorConvergenceFailure marks the evaluation as not converged.
    """

    func: Callable[[np.ndarray, np.ndarray], Any]
    reentrant: bool = False

    def evaluate(
        self, inputs: Sequence[float], initial_guess: Sequence[float]
    ) -> EvaluationResult:
        try:
            value = self.func(
                np.asarray(inputs, dtype=np.float64), np.asarray(initial_guess, dtype=np.float64)
            )
        except EvaluatorConvergenceFailure as exc:
            return EvaluationResult.failed(str(exc) or "not converged")
        return _coerce(value)


@dataclass(frozen=True)
class CommandEvaluator:
    """
    Evaluate by running an external program once per sample.

    The program receives `{"inputs": [...], "initial_guess": [...]}` as JSON on
    stdin and must print `{"status": "converged" | "failed", "outputs": [...]}`
    on stdout. A non-zero exit code counts as a failed solve.
    """

    argv: Sequence[str]
    timeout_seconds: float = 30.0
    reentrant: bool = True
    env: Optional[dict[str, str]] = field(default=None, compare=False)

    def evaluate(
        self, inputs: Sequence[float], initial_guess: Sequence[float]
    ) -> EvaluationResult:
        request = json.dumps(
            {"inputs": [float(v) for v in inputs], "initial_guess": [float(v) for v in initial_guess]}
        )
        try:
            completed = subprocess.run(  # noqa: S603
                list(self.argv),
                input=request,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                env=self.env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise EvaluatorTimeoutError(
                f"{self.argv[0]} exceeded {self.timeout_seconds}s"
            ) from exc

        if completed.returncode != 0:
            return EvaluationResult.failed(f"exit code {completed.returncode}")
        try:
            reply = json.loads(completed.stdout)
        except json.JSONDecodeError:
            return EvaluationResult(status="error", detail="evaluator reply is not JSON")
        if not isinstance(reply, dict):
            return EvaluationResult(status="error", detail="evaluator reply is not an object")
        if reply.get("status") != "converged":
            return EvaluationResult.failed(str(reply.get("detail") or reply.get("status")))
        outputs = reply.get("outputs")
        if not isinstance(outputs, list):
            return EvaluationResult(status="error", detail="evaluator reply has no outputs")
        try:
            return EvaluationResult.ok(outputs)
        except (TypeError, ValueError):
            return EvaluationResult(status="error", detail="evaluator outputs are not numeric")


def validate_outputs(result: EvaluationResult, expected: int) -> EvaluationResult:
    """Downgrade a converged result with unusable outputs to an error."""
    if not result.converged:
        return result
    if len(result.outputs) != expected:
        return EvaluationResult(
            status="error",
            detail=f"expected {expected} outputs, got {len(result.outputs)}",
        )
    if not all(math.isfinite(v) for v in result.outputs):
        return EvaluationResult(status="error", detail="non-finite outputs")
    return result


def load_evaluator_factory(spec: str) -> EvaluatorFactory:
    """
    Import a factory given as ``"package.module:attribute"``.

    The attribute must be callable as ``factory(info) -> Evaluator``.
    """
    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Evaluator factory must look like 'module:attribute', got '{spec}'")
    module = importlib.import_module(module_name)
    factory = module
    for part in attribute.split("."):
        factory = getattr(factory, part)
    if not callable(factory):
        raise TypeError(f"'{spec}' is not callable")
    return factory  # type: ignore[return-value]


@dataclass(frozen=True)
class CommandEvaluatorFactory:
    """
    Build a CommandEvaluator per equation from a command template.

    The template may reference ``{equation_id}``, e.g.
    ``"./evaluate_eq --eq {equation_id}"``.
    """

    template: str
    timeout_seconds: float = 30.0

    def __call__(self, info: ProfilingInfo) -> CommandEvaluator:
        argv: List[str] = shlex.split(self.template.format(equation_id=info.equation_id))
        if not argv:
            raise ValueError("Evaluator command template is empty")
        return CommandEvaluator(argv=tuple(argv), timeout_seconds=self.timeout_seconds)


__all__ = [
    "CallableEvaluator",
    "CommandEvaluator",
    "CommandEvaluatorFactory",
    "EvaluationResult",
    "EvaluationStatus",
    "Evaluator",
    "EvaluatorFactory",
    "load_evaluator_factory",
    "validate_outputs",
]
