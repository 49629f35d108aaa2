from pathlib import Path

import pytest

import pipeline
from errors import BuildFailure, CoveragePipelineError, RenderFailure, TestFailure
from instrumented_build import BuildOptions
from pipeline import CoveragePipeline, PipelineConfig, PipelineState, Stages
from tracefile import Tracefile
from workspace import Workspace

ALL_STATES_WITH_RENDER = [
    PipelineState.CLEAN,
    PipelineState.BUILD_UNIT,
    PipelineState.CAPTURE_UNIT,
    PipelineState.CLEAN_KEEPING_UNIT_RECORD,
    PipelineState.BUILD_INTEGRATION,
    PipelineState.CAPTURE_INTEGRATION,
    PipelineState.MERGE,
    PipelineState.FILTER,
    PipelineState.RENDER,
    PipelineState.DONE,
]


@pytest.fixture
def scenario(tmp_path: Path, tmp_workspace: Workspace, write_record) -> dict[str, str]:
    """Unit tests cover all of a.rs; integration tests cover part of a.rs,
    plus b.rs, which lies outside the project's own sources."""
    a_rs = str(tmp_workspace.root / "src" / "a.rs")
    b_rs = str(tmp_workspace.root / "vendor" / "b.rs")
    records = tmp_path / "records"
    write_record(records / "unit.info", {a_rs: {1: 1, 2: 1, 3: 1, 4: 1, 5: 1}})
    write_record(
        records / "integration.info",
        {a_rs: {1: 2, 2: 0, 3: 1, 4: 0, 5: 3}, b_rs: {1: 1, 2: 1}},
    )
    return {"a": a_rs, "b": b_rs}


def mk_config(ws: Workspace, cargo_cmd, lcov_config, render=True) -> PipelineConfig:
    return PipelineConfig(
        workspace=ws,
        owned_roots=[ws.root / "src"],
        build=BuildOptions(cargo=cargo_cmd),
        lcov=lcov_config,
        render=render,
    )


def test_end_to_end(tmp_workspace: Workspace, fake_cargo_cmd, fake_lcov_config, scenario):
    ws = tmp_workspace
    # Stale output from a previous run must not leak into this one.
    ws.info_path("integration.info").write_text("garbage", encoding="utf-8")

    result = CoveragePipeline(mk_config(ws, fake_cargo_cmd, fake_lcov_config)).run()

    assert result.error is None
    assert result.state == PipelineState.DONE
    assert result.exit_code == 0
    assert result.visited == ALL_STATES_WITH_RENDER

    final = Tracefile.load(ws.info_path("final.info"))
    assert final.source_files() == [scenario["a"]]
    a = final.get(scenario["a"])
    assert a is not None
    assert a.covered_lines() == {1, 2, 3, 4, 5}
    assert a.lines == {1: 3, 2: 1, 3: 2, 4: 1, 5: 4}

    # The merged record still has the foreign file; only filtering removes it.
    merged = Tracefile.load(ws.info_path("coverage.info"))
    assert scenario["b"] in merged.source_files()

    assert [p.name for p in ws.info_files()] == [
        "coverage.info",
        "final.info",
        "integration.info",
        "unit.info",
    ]
    assert (ws.report_dir / "index.html").is_file()


def test_render_is_skipped_when_disabled(
    tmp_workspace: Workspace, fake_cargo_cmd, fake_lcov_config, scenario
):
    ws = tmp_workspace
    result = CoveragePipeline(mk_config(ws, fake_cargo_cmd, fake_lcov_config, render=False)).run()
    assert result.succeeded
    assert PipelineState.RENDER not in result.visited
    assert result.report_dir is None
    assert not ws.report_dir.exists()


def test_reruns_are_deterministic(
    tmp_workspace: Workspace, fake_cargo_cmd, fake_lcov_config, scenario
):
    ws = tmp_workspace
    config = mk_config(ws, fake_cargo_cmd, fake_lcov_config, render=False)

    assert CoveragePipeline(config).run().succeeded
    first = ws.info_path("final.info").read_bytes()
    assert CoveragePipeline(config).run().succeeded
    assert ws.info_path("final.info").read_bytes() == first


def test_failing_integration_tests_abort(
    tmp_workspace: Workspace, fake_cargo_cmd, fake_lcov_config, scenario, monkeypatch
):
    ws = tmp_workspace
    monkeypatch.setenv("FAKE_TEST_EXIT_INTEGRATION", "1")

    result = CoveragePipeline(mk_config(ws, fake_cargo_cmd, fake_lcov_config)).run()

    assert result.state == PipelineState.FAILED
    assert result.exit_code != 0
    assert isinstance(result.error, TestFailure)
    assert result.error.step == PipelineState.CAPTURE_INTEGRATION.value
    assert result.visited[-1] == PipelineState.CAPTURE_INTEGRATION
    assert not ws.info_path("integration.info").exists()
    assert not ws.info_path("coverage.info").exists()
    assert not ws.info_path("final.info").exists()


def test_build_failure_aborts_before_capture(
    tmp_workspace: Workspace, fake_cargo_cmd, fake_lcov_config, monkeypatch
):
    monkeypatch.setenv("FAKE_CARGO_FAIL", "1")
    result = CoveragePipeline(mk_config(tmp_workspace, fake_cargo_cmd, fake_lcov_config)).run()
    assert isinstance(result.error, BuildFailure)
    assert result.visited == [PipelineState.CLEAN, PipelineState.BUILD_UNIT]
    assert tmp_workspace.info_files() == []


def test_render_failure_is_terminal_but_keeps_final_record(
    tmp_workspace: Workspace, fake_cargo_cmd, fake_lcov_config, scenario, monkeypatch
):
    monkeypatch.setenv("FAKE_GENHTML_FAIL", "1")
    ws = tmp_workspace
    result = CoveragePipeline(mk_config(ws, fake_cargo_cmd, fake_lcov_config)).run()
    assert isinstance(result.error, RenderFailure)
    assert result.exit_code == 1
    assert ws.info_path("final.info").is_file()


def test_unit_record_survives_cleanup_between_targets(
    tmp_workspace: Workspace, fake_lcov_config, write_record
):
    ws = tmp_workspace
    observed: list[tuple[str, bool, bool]] = []

    def build(target, instrumentation, options, ws):
        # What each build finds in the workspace when it starts.
        observed.append((target.name, ws.info_path("unit.info").exists(), ws.build_dir.exists()))
        (ws.build_dir / "deps").mkdir(parents=True, exist_ok=True)
        (ws.build_dir / "deps" / f"{target.name}.gcda").write_text("", encoding="utf-8")
        return target

    def capture(target, lcov_config, ws, test_args):
        return write_record(ws.info_path(target.info_name), {"src/a.rs": {1: 1}})

    stages = Stages(build=build, capture=capture)
    result = CoveragePipeline(
        mk_config(ws, ("cargo",), fake_lcov_config, render=False), stages
    ).run()

    assert result.succeeded
    assert observed == [("unit", False, False), ("integration", True, False)]


def test_illegal_transitions_are_refused(tmp_workspace: Workspace, fake_lcov_config):
    p = CoveragePipeline(mk_config(tmp_workspace, ("cargo",), fake_lcov_config))
    with pytest.raises(RuntimeError):
        p._advance(PipelineState.MERGE)
    assert pipeline.TRANSITIONS[PipelineState.FAILED] == ()


def stub_stages(write_record, merged_text: str) -> Stages:
    def build(target, instrumentation, options, ws):
        return target

    def capture(target, lcov_config, ws, test_args):
        return write_record(ws.info_path(target.info_name), {"src/a.rs": {1: 1}})

    def merge(inputs, output, lcov_config, ws):
        output.write_text(merged_text, encoding="utf-8")
        return output

    return Stages(build=build, capture=capture, merge=merge)


def test_unreadable_merged_record_fails_the_filter_step(
    tmp_workspace: Workspace, fake_lcov_config, write_record
):
    stages = stub_stages(write_record, "TN:\nSF:src/a.rs\nDA:1,x\nend_of_record\n")
    result = CoveragePipeline(
        mk_config(tmp_workspace, ("cargo",), fake_lcov_config, render=False), stages
    ).run()

    assert result.state == PipelineState.FAILED
    assert result.exit_code == 1
    assert isinstance(result.error, CoveragePipelineError)
    assert result.error.step == PipelineState.FILTER.value
    assert isinstance(result.error.__cause__, ValueError)
    assert not tmp_workspace.info_path("final.info").exists()


def test_stray_os_errors_end_in_the_failed_state(
    tmp_workspace: Workspace, fake_lcov_config, write_record
):
    stages = stub_stages(write_record, "")

    def merge(inputs, output, lcov_config, ws):
        raise PermissionError(13, "Permission denied", str(output))

    stages.merge = merge
    result = CoveragePipeline(
        mk_config(tmp_workspace, ("cargo",), fake_lcov_config, render=False), stages
    ).run()

    assert result.state == PipelineState.FAILED
    assert result.error is not None
    assert result.error.step == PipelineState.MERGE.value
    assert "Permission denied" in str(result.error)
    assert isinstance(result.error.__cause__, PermissionError)
