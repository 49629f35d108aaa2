from pathlib import Path
from typing import Sequence

import click

import cargo_workspace_helpers
import coverage_stages
from errors import MissingInputRecord
from lcov_tools import LcovConfig
from pipeline import CoveragePipeline, PipelineConfig, PipelineResult, PipelineState
from tracefile import Tracefile
from workspace import Workspace


def resolve_owned_roots(ws: Workspace, explicit: Sequence[str]) -> list[Path]:
    if explicit:
        return [(ws.root / p).resolve() for p in explicit]
    try:
        workspace_root = cargo_workspace_helpers.find_workspace_root(ws.root)
    except FileNotFoundError as e:
        raise click.UsageError(f"{e}; pass --owned-root explicitly.")
    roots = cargo_workspace_helpers.owned_source_roots(workspace_root)
    if not roots:
        raise click.UsageError(
            f"No package `src` directories found under {workspace_root}; "
            "pass --owned-root explicitly."
        )
    return roots


def do_run_pipeline(config: PipelineConfig) -> PipelineResult:
    click.echo("Owned source roots:\n" + "\n".join(f"  {r}" for r in config.owned_roots))
    if not config.render:
        click.echo("Skipping HTML rendering (CI environment or --no-render).")

    pipeline = CoveragePipeline(config)
    result = pipeline.run()

    click.echo("Steps:\n" + pipeline.tracker.describe())
    if result.state == PipelineState.FAILED:
        assert result.error is not None
        click.echo(f"ERROR: coverage pipeline failed in {result.error.step}:", err=True)
        click.echo(str(result.error), err=True)
        return result

    assert result.filtered is not None
    echo_summary(result.filtered, result.records["final"])
    if result.report_dir is not None:
        click.echo(f"HTML report: {result.report_dir}")
    return result


def do_merge(inputs: Sequence[Path], output: Path, config: LcovConfig, ws: Workspace) -> Path:
    return coverage_stages.merge_records(list(inputs), output, config, ws)


def do_filter(input: Path, output: Path, owned_roots: Sequence[Path], ws: Workspace) -> Tracefile:
    return coverage_stages.filter_record(input, output, owned_roots, ws.root)


def do_clean(ws: Workspace, keep: Sequence[str]) -> list[Path]:
    return ws.preserve_and_clean(keep)


def echo_summary(tf: Tracefile, label: Path | str, per_file: bool = False):
    if per_file:
        for r in tf.records:
            click.echo(
                f"  {r.source_file}: lines {r.lines_hit}/{r.lines_found}, "
                f"branches {r.branches_hit}/{r.branches_found}"
            )
    s = tf.summary()
    click.echo(f"Summary of {label} ({s.files} files):")
    click.echo(f"  lines......: {s.line_rate:.1%} ({s.lines_hit} of {s.lines_found})")
    click.echo(f"  branches...: {s.branch_rate:.1%} ({s.branches_hit} of {s.branches_found})")


def do_summary(info: Path, per_file: bool) -> Tracefile:
    if not info.is_file():
        raise MissingInputRecord(f"No such coverage record: {info}")
    tf = Tracefile.load(info)
    echo_summary(tf, info, per_file=per_file)
    return tf
