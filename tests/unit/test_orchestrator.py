from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from tenacity import wait_none

from nlsurrogate import orchestrator
from nlsurrogate.errors import MalformedTraceError, SimulationFailureError
from nlsurrogate.orchestrator import PipelineConfig, run_pipeline
from nlsurrogate.simulation import ReferenceSimulationCache, ResultFileSource

SYSTEM_ID = 14
SAMPLE_COUNT = 20
RETRIES = 3


class _FlakySource:
    def __init__(self, path: Path, failures: int, model_id: str = "simpleLoop") -> None:
        self.path = path
        self.failures = failures
        self.model_id = model_id
        self.runs = 0

    def run(self) -> Path:
        self.runs += 1
        if self.runs <= self.failures:
            raise SimulationFailureError(f"crash #{self.runs}", model_id=self.model_id)
        return self.path


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    monkeypatch.setattr(orchestrator, "_SIMULATION_WAIT", wait_none())


def _config(files, **overrides) -> PipelineConfig:
    values = dict(
        model_name="simpleLoop",
        trace_path=files.trace,
        structure_path=files.structure,
        threshold=0.1,
        sample_count=SAMPLE_COUNT,
        executor="serial",
        results_dir=files.results_dir,
        simulation_retries=RETRIES,
    )
    values.update(overrides)
    return PipelineConfig(**values)


def _rewrite(files, prof_payload, info_payload) -> None:
    files.trace.write_text(json.dumps(prof_payload), encoding="utf-8")
    files.structure.write_text(json.dumps(info_payload), encoding="utf-8")


def _add_system(prof_payload, info_payload, eq_id: int, share: float, defines, uses=()) -> None:
    prof_payload["profileBlocks"].append(
        {"id": eq_id, "ncall": 10, "time": share * prof_payload["totalTime"]}
    )
    info_payload["equations"].append(
        {"eqIndex": eq_id, "tag": "system", "display": "non-linear", "defines": list(defines)}
    )
    if uses:
        info_payload["equations"].append(
            {"eqIndex": eq_id + 1, "parent": eq_id, "tag": "residual", "uses": list(uses)}
        )


def test_pipeline_produces_dataset_and_artifacts(simple_loop_files, simple_loop_factory) -> None:
    source = ResultFileSource(simple_loop_files.result)

    report = run_pipeline(
        _config(simple_loop_files), source, simple_loop_factory, cache=ReferenceSimulationCache()
    )

    assert [r.id for r in report.hotspots] == [SYSTEM_ID]
    assert [o.status for o in report.outcomes] == ["success"]
    outcome = report.outcome(SYSTEM_ID)
    assert outcome.dataset.size == SAMPLE_COUNT
    model_dir = simple_loop_files.results_dir / "simpleLoop"
    assert outcome.artifact_dir == model_dir / f"eq_{SYSTEM_ID}"
    assert (outcome.artifact_dir / "dataset.csv").is_file()
    assert (model_dir / "profiling_info.json").is_file()
    summary = json.loads((model_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["counts"] == {"success": 1}


def test_pipeline_skips_unresolvable_and_continues(
    simple_loop_files, simple_loop_factory, prof_payload, info_payload
) -> None:
    _add_system(prof_payload, info_payload, 20, 0.2, defines=())
    _rewrite(simple_loop_files, prof_payload, info_payload)

    report = run_pipeline(
        _config(simple_loop_files, persist=False),
        ResultFileSource(simple_loop_files.result),
        simple_loop_factory,
        cache=ReferenceSimulationCache(),
    )

    assert [(o.equation_id, o.status) for o in report.outcomes] == [
        (20, "skipped"),
        (SYSTEM_ID, "success"),
    ]
    assert "no iteration variables" in report.outcome(20).reason


def test_pipeline_isolates_range_failures(
    simple_loop_files, simple_loop_factory, prof_payload, info_payload
) -> None:
    _add_system(prof_payload, info_payload, 30, 0.3, defines=["z"], uses=["w", "z"])
    _rewrite(simple_loop_files, prof_payload, info_payload)

    report = run_pipeline(
        _config(simple_loop_files, persist=False),
        ResultFileSource(simple_loop_files.result),
        simple_loop_factory,
        cache=ReferenceSimulationCache(),
    )

    assert report.outcome(30).status == "skipped"
    assert "range discovery failed" in report.outcome(30).reason
    assert report.outcome(SYSTEM_ID).status == "success"


def test_pipeline_tolerant_policy_records_failure(simple_loop_files) -> None:
    def broken_factory(info):
        raise RuntimeError("intentional failure")

    report = run_pipeline(
        _config(simple_loop_files, persist=False),
        ResultFileSource(simple_loop_files.result),
        broken_factory,
        cache=ReferenceSimulationCache(),
    )

    outcome = report.outcome(SYSTEM_ID)
    assert outcome.status == "failed"
    assert outcome.reason == "RuntimeError: intentional failure"


def test_pipeline_strict_policy_fails_fast(simple_loop_files) -> None:
    def broken_factory(info):
        raise RuntimeError("intentional failure")

    with pytest.raises(RuntimeError, match="intentional failure"):
        run_pipeline(
            _config(simple_loop_files, persist=False, failure_policy="strict"),
            ResultFileSource(simple_loop_files.result),
            broken_factory,
            cache=ReferenceSimulationCache(),
        )


def test_pipeline_retries_reference_simulation(simple_loop_files, simple_loop_factory) -> None:
    source = _FlakySource(simple_loop_files.result, failures=RETRIES - 1)

    report = run_pipeline(
        _config(simple_loop_files, persist=False),
        source,
        simple_loop_factory,
        cache=ReferenceSimulationCache(),
    )

    assert source.runs == RETRIES
    assert report.outcome(SYSTEM_ID).ok


def test_pipeline_simulation_failure_is_fatal(simple_loop_files, simple_loop_factory) -> None:
    source = _FlakySource(simple_loop_files.result, failures=RETRIES + 5)

    with pytest.raises(SimulationFailureError, match=f"crash #{RETRIES}"):
        run_pipeline(
            _config(simple_loop_files, persist=False),
            source,
            simple_loop_factory,
            cache=ReferenceSimulationCache(),
        )

    assert source.runs == RETRIES


def test_pipeline_memoizes_reference_simulation(simple_loop_files, simple_loop_factory) -> None:
    source = _FlakySource(simple_loop_files.result, failures=0)
    cache = ReferenceSimulationCache()

    for _ in range(2):
        run_pipeline(
            _config(simple_loop_files, persist=False), source, simple_loop_factory, cache=cache
        )

    assert source.runs == 1


def test_pipeline_without_hotspots_skips_simulation(simple_loop_files, simple_loop_factory) -> None:
    source = _FlakySource(simple_loop_files.result, failures=0)

    report = run_pipeline(
        _config(simple_loop_files, threshold=1.0),
        source,
        simple_loop_factory,
        cache=ReferenceSimulationCache(),
    )

    assert report.hotspots == []
    assert report.outcomes == []
    assert source.runs == 0


def test_pipeline_cancelled_before_start(simple_loop_files, simple_loop_factory) -> None:
    cancel = threading.Event()
    cancel.set()

    report = run_pipeline(
        _config(simple_loop_files, persist=False),
        ResultFileSource(simple_loop_files.result),
        simple_loop_factory,
        cache=ReferenceSimulationCache(),
        cancel_event=cancel,
    )

    assert [o.status for o in report.cancelled] == ["cancelled"]


def test_pipeline_malformed_trace_is_fatal(simple_loop_files, simple_loop_factory) -> None:
    simple_loop_files.trace.write_text("{}", encoding="utf-8")

    with pytest.raises(MalformedTraceError):
        run_pipeline(
            _config(simple_loop_files),
            ResultFileSource(simple_loop_files.result),
            simple_loop_factory,
        )


def test_config_defaults_come_from_settings(monkeypatch, simple_loop_files) -> None:
    monkeypatch.setenv("NLS_SAMPLE_COUNT", "12")

    resolved = PipelineConfig(
        model_name="simpleLoop",
        trace_path=simple_loop_files.trace,
        structure_path=simple_loop_files.structure,
        seed=3,
    ).with_defaults(orchestrator.get_settings())

    assert resolved.sample_count == 12
    assert resolved.seed == 3
    assert resolved.model_dir == Path("results") / "simpleLoop"


def test_pipeline_reads_each_result_file_without_shared_cache(
    simple_loop_files, simple_loop_factory, tmp_path: Path
) -> None:
    shifted = tmp_path / "rerun" / "simpleLoop_res.csv"
    shifted.parent.mkdir()
    lines = simple_loop_files.result.read_text(encoding="utf-8").splitlines()
    rows = [lines[0]]
    for line in lines[1:]:
        t, r, s, x, y = line.split(",")
        rows.append(",".join([t, r, repr(float(s) + 100.0), x, y]))
    shifted.write_text("\n".join(rows) + "\n", encoding="utf-8")

    ranges = []
    for path in (simple_loop_files.result, shifted):
        report = run_pipeline(
            _config(simple_loop_files, persist=False), ResultFileSource(path), simple_loop_factory
        )
        ranges.append({r.name: r for r in report.outcome(SYSTEM_ID).dataset.ranges})

    assert ranges[0]["s"].observed_max == pytest.approx(1.0)
    assert ranges[1]["s"].observed_min == pytest.approx(100.5)
    assert ranges[1]["s"].observed_max == pytest.approx(101.0)


def test_pipeline_runs_source_once_per_call_without_cache(
    simple_loop_files, simple_loop_factory
) -> None:
    source = _FlakySource(simple_loop_files.result, failures=0)

    for _ in range(2):
        run_pipeline(_config(simple_loop_files, persist=False), source, simple_loop_factory)

    assert source.runs == 2
