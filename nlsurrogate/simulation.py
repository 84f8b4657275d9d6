"""
Reference simulation sources for range discovery.

A simulation source produces a time-series result file for the full model.
Three implementations are provided:

- ResultFileSource: reuse a result file that already exists.
- CommandSimulationSource: run an arbitrary simulator command with a timeout.
- OmcSession: drive the OpenModelica compiler (`omc`) with a generated `.mos`
  script. Besides the result file it produces the profiling trace
  (`<model>_prof.json`) and the model structure (`<model>_info.json`).

The reference run is expensive and shared by every equation of a model, so
ReferenceSimulationCache memoizes it per model id. Sources never retry; the
orchestrator wraps them with tenacity.
"""

from __future__ import annotations

import csv
import math
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Sequence, runtime_checkable

from nlsurrogate.errors import NlSurrogateError, SimulationFailureError
from nlsurrogate.utils.logging import get_logger

log = get_logger(__name__)


class ToolNotFoundError(NlSurrogateError, RuntimeError):
    """Raised when a required external tool is not available on PATH."""


@runtime_checkable
class SimulationSource(Protocol):
    """
    Anything that can (re)produce the reference result file of a model.

    Attributes
    ----------
    model_id : str
        Identity of the simulated model; used as the memoization key.
    """

    model_id: str

    def run(self) -> Path:
        """Run (or reuse) the simulation and return the result file path."""
        ...


@dataclass(frozen=True)
class ResultFileSource:
    """A result file produced earlier by the simulator."""

    path: Path
    model_id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        if not self.model_id:
            object.__setattr__(self, "model_id", self.path.stem.removesuffix("_res"))

    def run(self) -> Path:
        if not self.path.is_file():
            raise SimulationFailureError(
                f"Result file {self.path} does not exist", model_id=self.model_id
            )
        return self.path


def _tail(text: str | bytes | None, lines: int = 20) -> str:
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return "\n".join(text.strip().splitlines()[-lines:])


@dataclass(frozen=True)
class CommandSimulationSource:
    """
    Run an external simulator command that writes `result_path`.

    The command is considered failed when it exits non-zero, exceeds the
    timeout, or does not leave the result file behind.
    """

    model_id: str
    argv: Sequence[str]
    result_path: Path
    cwd: Optional[Path] = None
    timeout_seconds: float = 600.0

    def run(self) -> Path:
        result_path = Path(self.result_path)
        log.info(
            f"[SIMULATION START] {self.model_id}",
            extra={"model": self.model_id, "argv": list(self.argv)},
        )
        try:
            completed = subprocess.run(  # noqa: S603
                list(self.argv),
                cwd=self.cwd,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise SimulationFailureError(
                f"Simulation of {self.model_id} timed out after {self.timeout_seconds}s",
                model_id=self.model_id,
            ) from exc
        except OSError as exc:
            raise SimulationFailureError(
                f"Simulation of {self.model_id} could not be started: {exc}",
                model_id=self.model_id,
            ) from exc

        if completed.returncode != 0:
            raise SimulationFailureError(
                f"Simulation of {self.model_id} exited with code {completed.returncode}:\n"
                f"{_tail(completed.stderr) or _tail(completed.stdout)}",
                model_id=self.model_id,
            )
        if not result_path.is_file():
            raise SimulationFailureError(
                f"Simulation of {self.model_id} produced no result file at {result_path}:\n"
                f"{_tail(completed.stdout)}",
                model_id=self.model_id,
            )
        log.info(f"[SIMULATION SUCCESS] {self.model_id}", extra={"result": str(result_path)})
        return result_path


def ensure_omc(omc_path: Optional[str] = None) -> str:
    """Return the `omc` executable path or raise a friendly error."""
    candidate = omc_path or "omc"
    path = shutil.which(candidate)
    if not path:
        raise ToolNotFoundError(
            f"OpenModelica compiler ({candidate}) not found. Install it and verify with "
            "'omc --version', or set NLS_OMC_PATH."
        )
    return path


@dataclass(frozen=True)
class SimulationArtifacts:
    """Files written by one profiled OpenModelica simulation."""

    trace_path: Path
    structure_path: Path
    result_path: Path


class OmcSession:
    """
    Simulate and profile a Modelica model with the OpenModelica compiler.

    Parameters
    ----------
    model_name : str
        Name of the Modelica model to simulate.
    mo_path : Path
        Path to the `.mo` file containing the model.
    work_dir : Path
        Directory receiving the script and all simulator output.
    omc_path : str | None
        Explicit `omc` executable; resolved from PATH when omitted.
    timeout_seconds : float
        Upper bound for the whole omc run.
    """

    def __init__(
        self,
        model_name: str,
        mo_path: Path | str,
        work_dir: Path | str,
        omc_path: Optional[str] = None,
        timeout_seconds: float = 600.0,
    ) -> None:
        self.model_name = model_name
        self.mo_path = Path(mo_path).resolve()
        self.work_dir = Path(work_dir).resolve()
        self.omc_path = omc_path
        self.timeout_seconds = timeout_seconds

    @property
    def model_id(self) -> str:
        return self.model_name

    @property
    def artifacts(self) -> SimulationArtifacts:
        return SimulationArtifacts(
            trace_path=self.work_dir / f"{self.model_name}_prof.json",
            structure_path=self.work_dir / f"{self.model_name}_info.json",
            result_path=self.work_dir / f"{self.model_name}_res.csv",
        )

    def script(self) -> str:
        mo = self.mo_path.as_posix()
        return "\n".join(
            [
                f'loadFile("{mo}"); getErrorString();',
                'setCommandLineOptions("-d=backenddaeinfo,infoXmlOperations"); getErrorString();',
                'setCommandLineOptions("--profiling=blocks+html"); getErrorString();',
                f'simulate({self.model_name}, outputFormat="csv"); getErrorString();',
                "",
            ]
        )

    def simulate(self) -> SimulationArtifacts:
        """Run omc once and return the produced trace, structure and result files."""
        omc = ensure_omc(self.omc_path)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        script_path = self.work_dir / f"simulate_{self.model_name}.mos"
        script_path.write_text(self.script(), encoding="utf-8")

        artifacts = self.artifacts
        CommandSimulationSource(
            model_id=self.model_name,
            argv=[omc, script_path.name],
            result_path=artifacts.result_path,
            cwd=self.work_dir,
            timeout_seconds=self.timeout_seconds,
        ).run()
        for path in (artifacts.trace_path, artifacts.structure_path):
            if not path.is_file():
                raise SimulationFailureError(
                    f"omc did not write {path.name}; is profiling supported by this omc?",
                    model_id=self.model_name,
                )
        return artifacts

    def run(self) -> Path:
        return self.simulate().result_path


class ReferenceSimulationCache:
    """
    Memoize reference simulation runs per model id.

    Each model is simulated at most once; concurrent callers for the same
    model wait for the first run instead of starting their own. Failures are
    not cached so a later call can try again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._results: Dict[str, Path] = {}

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def get(
        self,
        source: SimulationSource,
        run: Optional[Callable[[SimulationSource], Path]] = None,
    ) -> Path:
        key = source.model_id
        with self._key_lock(key):
            cached = self._results.get(key)
            if cached is not None:
                return cached
            result = run(source) if run is not None else source.run()
            self._results[key] = result
            return result

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._results

    def clear(self) -> None:
        with self._lock:
            self._results.clear()


def read_result_header(path: Path) -> List[str]:
    """Return the column names of a CSV result file."""
    with Path(path).open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        try:
            header = next(reader)
        except StopIteration:
            raise SimulationFailureError(f"Result file {path} is empty") from None
    return [name.strip() for name in header]


def iter_result_rows(path: Path, columns: Sequence[str]) -> Iterator[List[float]]:
    """
    Stream the requested columns of a CSV result file, one timestep at a time.

    Unparsable cells are returned as NaN so callers can decide how to treat
    them; a row with the wrong number of cells aborts with SimulationFailureError.
    """
    path = Path(path)
    with path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        try:
            header = [name.strip() for name in next(reader)]
        except StopIteration:
            raise SimulationFailureError(f"Result file {path} is empty") from None
        positions = {name: i for i, name in enumerate(header)}
        indices = [positions[name] for name in columns]
        for line_no, row in enumerate(reader, start=2):
            if not row:
                continue
            if len(row) != len(header):
                raise SimulationFailureError(
                    f"Result file {path} line {line_no} has {len(row)} cells, "
                    f"expected {len(header)}"
                )
            values: List[float] = []
            for i in indices:
                try:
                    values.append(float(row[i]))
                except ValueError:
                    values.append(math.nan)
            yield values


__all__ = [
    "CommandSimulationSource",
    "OmcSession",
    "ReferenceSimulationCache",
    "ResultFileSource",
    "SimulationArtifacts",
    "SimulationSource",
    "ToolNotFoundError",
    "ensure_omc",
    "iter_result_rows",
    "read_result_header",
]
