from pathlib import Path

import pytest

import coverage_stages
from errors import CoveragePipelineError, MissingInputRecord, RenderFailure
from tracefile import Tracefile
from workspace import Workspace


def merged(ws: Workspace, config, *inputs: Path, name: str = "out.info") -> Tracefile:
    out = coverage_stages.merge_records(list(inputs), ws.info_path(name), config, ws)
    return Tracefile.load(out)


def test_merge_is_a_pointwise_sum(tmp_workspace: Workspace, fake_lcov_config, write_record):
    ws = tmp_workspace
    a = write_record(ws.info_path("a.info"), {"src/f.rs": {10: 3, 11: 0}, "src/g.rs": {1: 7}})
    b = write_record(ws.info_path("b.info"), {"src/f.rs": {10: 5, 12: 1}})

    result = merged(ws, fake_lcov_config, a, b)

    f = result.get("src/f.rs")
    assert f is not None
    assert f.lines == {10: 8, 11: 0, 12: 1}
    # Only in A: carried through unchanged.
    g = result.get("src/g.rs")
    assert g is not None
    assert g.lines == {1: 7}


def test_merge_sums_branches(tmp_workspace: Workspace, fake_lcov_config, write_record):
    ws = tmp_workspace
    a = write_record(
        ws.info_path("a.info"),
        {"f.rs": {1: 1}},
        branches={"f.rs": {(1, "0", "0"): 1, (1, "0", "1"): None}},
    )
    b = write_record(
        ws.info_path("b.info"),
        {"f.rs": {1: 1}},
        branches={"f.rs": {(1, "0", "0"): 2, (1, "0", "1"): 4}},
    )
    f = merged(ws, fake_lcov_config, a, b).get("f.rs")
    assert f is not None
    assert f.branches == {(1, "0", "0"): 3, (1, "0", "1"): 4}


def test_merge_is_commutative_and_associative(
    tmp_workspace: Workspace, fake_lcov_config, write_record
):
    ws = tmp_workspace
    a = write_record(ws.info_path("a.info"), {"x.rs": {1: 1, 2: 0}, "y.rs": {3: 2}})
    b = write_record(ws.info_path("b.info"), {"x.rs": {2: 4}, "z.rs": {1: 0}})
    c = write_record(ws.info_path("c.info"), {"y.rs": {3: 1, 4: 9}, "x.rs": {1: 2}})

    assert merged(ws, fake_lcov_config, a, b, name="ab.info") == merged(
        ws, fake_lcov_config, b, a, name="ba.info"
    )

    ab = ws.info_path("ab.info")
    bc = coverage_stages.merge_records([b, c], ws.info_path("bc.info"), fake_lcov_config, ws)
    left = merged(ws, fake_lcov_config, ab, c, name="ab_c.info")
    right = merged(ws, fake_lcov_config, a, bc, name="a_bc.info")
    assert left == right


def test_merge_rejects_missing_inputs(tmp_workspace: Workspace, fake_lcov_config, write_record):
    ws = tmp_workspace
    a = write_record(ws.info_path("a.info"), {"x.rs": {1: 1}})
    with pytest.raises(MissingInputRecord) as excinfo:
        coverage_stages.merge_records(
            [a, ws.info_path("integration.info")], ws.info_path("out.info"), fake_lcov_config, ws
        )
    assert "integration.info" in str(excinfo.value)
    assert not ws.info_path("out.info").exists()


def test_merge_needs_two_inputs(tmp_workspace: Workspace, fake_lcov_config, write_record):
    ws = tmp_workspace
    a = write_record(ws.info_path("a.info"), {"x.rs": {1: 1}})
    with pytest.raises(ValueError):
        coverage_stages.merge_records([a], ws.info_path("out.info"), fake_lcov_config, ws)


def test_merge_translator_failure(
    tmp_workspace: Workspace, fake_lcov_config, write_record, monkeypatch
):
    ws = tmp_workspace
    a = write_record(ws.info_path("a.info"), {"x.rs": {1: 1}})
    b = write_record(ws.info_path("b.info"), {"x.rs": {1: 1}})
    monkeypatch.setenv("FAKE_LCOV_FAIL", "1")
    with pytest.raises(CoveragePipelineError) as excinfo:
        coverage_stages.merge_records([a, b], ws.info_path("out.info"), fake_lcov_config, ws)
    assert "simulated failure" in str(excinfo.value)


def test_filter_record(tmp_workspace: Workspace, write_record):
    ws = tmp_workspace
    src = ws.root / "src"
    unfiltered = write_record(
        ws.info_path("coverage.info"),
        {
            str(src / "lib.rs"): {1: 1},
            "src/relative.rs": {1: 0},
            str(ws.root / "tests" / "it.rs"): {1: 1},
            "/home/u/.cargo/registry/src/dep-1.0/lib.rs": {1: 1},
        },
    )
    final = ws.info_path("final.info")

    filtered = coverage_stages.filter_record(unfiltered, final, [src], ws.root)

    assert filtered.source_files() == [str(src / "lib.rs"), "src/relative.rs"]
    assert Tracefile.load(final) == filtered

    # Filtering the filtered record again changes nothing, byte for byte.
    again = ws.info_path("again.info")
    coverage_stages.filter_record(final, again, [src], ws.root)
    assert again.read_bytes() == final.read_bytes()


def test_filter_missing_input(tmp_workspace: Workspace):
    ws = tmp_workspace
    with pytest.raises(MissingInputRecord):
        coverage_stages.filter_record(
            ws.info_path("coverage.info"), ws.info_path("final.info"), [ws.root / "src"], ws.root
        )


def test_render(tmp_workspace: Workspace, fake_lcov_config, write_record):
    ws = tmp_workspace
    final = write_record(ws.info_path("final.info"), {"src/lib.rs": {1: 1}})
    out = coverage_stages.render_report(final, ws.report_dir, fake_lcov_config, ws)
    assert (out / "index.html").is_file()


def test_render_failure(tmp_workspace: Workspace, fake_lcov_config, write_record, monkeypatch):
    ws = tmp_workspace
    final = write_record(ws.info_path("final.info"), {"src/lib.rs": {1: 1}})
    monkeypatch.setenv("FAKE_GENHTML_FAIL", "1")
    with pytest.raises(RenderFailure):
        coverage_stages.render_report(final, ws.report_dir, fake_lcov_config, ws)
    assert final.is_file()


def test_render_arguments(tmp_workspace: Workspace, fake_lcov_config):
    args = fake_lcov_config.render_args(tmp_workspace.info_path("final.info"), Path("out"))
    for flag in ["--branch-coverage", "--demangle-cpp"]:
        assert flag in args
    assert args[args.index("--ignore-errors") + 1] == "source"
    assert args[-1] == str(tmp_workspace.info_path("final.info"))
