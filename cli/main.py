import shlex
import sys
from pathlib import Path

import click

import cli_subcommands
import hermetic
from errors import CoveragePipelineError
from instrumentation import InstrumentationConfig
from instrumented_build import BuildOptions
from lcov_tools import LcovConfig
from pipeline import PipelineConfig
from workspace import Workspace


def lcov_options(fn):
    """Options shared by every command that invokes lcov or genhtml."""
    decorators = [
        click.option(
            "--lcov",
            "lcov_cmd",
            default="lcov",
            envvar="COVPIPE_LCOV",
            show_default=True,
            help="Translator command (split like a shell would).",
        ),
        click.option(
            "--genhtml",
            "genhtml_cmd",
            default="genhtml",
            envvar="COVPIPE_GENHTML",
            show_default=True,
            help="Renderer command (split like a shell would).",
        ),
        click.option(
            "--gcov-tool",
            envvar="COVPIPE_GCOV_TOOL",
            help="Counter tool for lcov to use instead of `gcov`.",
        ),
        click.option(
            "--branch-coverage/--no-branch-coverage",
            default=True,
            show_default=True,
        ),
        click.option(
            "--exclude-line",
            default=None,
            help="Regex of source lines to leave out of coverage accounting "
            "(default: lines that are only an assertion).",
        ),
    ]
    for decorator in reversed(decorators):
        fn = decorator(fn)
    return fn


def mk_lcov_config(lcov_cmd, genhtml_cmd, gcov_tool, branch_coverage, exclude_line) -> LcovConfig:
    kwargs = {}
    if exclude_line is not None:
        kwargs["exclude_line_pattern"] = exclude_line or None
    return LcovConfig(
        lcov=tuple(shlex.split(lcov_cmd)),
        genhtml=tuple(shlex.split(genhtml_cmd)),
        gcov_tool=gcov_tool,
        branch_coverage=branch_coverage,
        **kwargs,
    )


def mk_workspace(root: str | None) -> Workspace:
    return Workspace.at(Path(root) if root else Path.cwd())


root_option = click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, dir_okay=True),
    help="Directory to run in (default: the current directory).",
)


@click.group()
def cli():
    pass


@cli.command()
@root_option
@click.option(
    "--owned-root",
    "owned_roots",
    multiple=True,
    envvar="COVPIPE_OWNED_ROOTS",
    help="Source directory whose files are scored. Repeatable. "
    "Default: the `src` directory of each Cargo workspace package.",
)
@click.option("--features", multiple=True, envvar="COVPIPE_FEATURES")
@click.option("--all-features", is_flag=True)
@click.option("--no-default-features", is_flag=True)
@click.option("--release", is_flag=True, help="Build the tests with the release profile.")
@click.option("--cargo", "cargo_cmd", default="cargo", envvar="COVPIPE_CARGO", show_default=True)
@click.option(
    "--integration-test",
    help="Name of the integration test to run (default: all of them).",
)
@click.option(
    "--render/--no-render",
    default=None,
    help="Render an HTML report. Default: render unless running in CI.",
)
@click.option(
    "--runtime-lib",
    default="gcov",
    show_default=True,
    help="Counter-emission runtime library to link; empty to link none. "
    "Must match the profiling flag's instrumentation.",
)
@click.option(
    "--profiling-flag",
    default="-Zprofile",
    show_default=True,
    envvar="COVPIPE_PROFILING_FLAG",
    help="rustc flag that turns on gcov-style counters. -Zprofile needs a nightly "
    "toolchain that still has it (removed in late 2024); pin one with "
    "COVPIPE_CARGO_TOOLCHAIN_SPEC, e.g. nightly-2024-10-01.",
)
@lcov_options
@click.argument("test_args", nargs=-1)
def run(
    root,
    owned_roots,
    features,
    all_features,
    no_default_features,
    release,
    cargo_cmd,
    integration_test,
    render,
    runtime_lib,
    profiling_flag,
    lcov_cmd,
    genhtml_cmd,
    gcov_tool,
    branch_coverage,
    exclude_line,
    test_args,
):
    """Build, test, capture, merge and filter coverage for a Cargo project.

    Extra TEST_ARGS (after `--`) are passed to every test executable.
    """
    ws = mk_workspace(root)
    if render is None:
        render = not hermetic.running_in_ci()
    if not profiling_flag.strip():
        raise click.BadParameter("must not be empty", param_hint="--profiling-flag")

    config = PipelineConfig(
        workspace=ws,
        owned_roots=cli_subcommands.resolve_owned_roots(ws, owned_roots),
        instrumentation=InstrumentationConfig(
            runtime_lib=runtime_lib or None, profiling_flag=profiling_flag
        ),
        build=BuildOptions(
            cargo=tuple(shlex.split(cargo_cmd)),
            release=release,
            features=tuple(f for spec in features for f in spec.replace(",", " ").split()),
            all_features=all_features,
            no_default_features=no_default_features,
        ),
        lcov=mk_lcov_config(lcov_cmd, genhtml_cmd, gcov_tool, branch_coverage, exclude_line),
        render=render,
        integration_test=integration_test,
        test_args=test_args,
    )
    result = cli_subcommands.do_run_pipeline(config)
    sys.exit(result.exit_code)


@cli.command()
@root_option
@click.argument("inputs", nargs=-1, required=True)
@click.option("-o", "--output", required=True, help="Merged coverage record to write.")
@lcov_options
def merge(root, inputs, output, lcov_cmd, genhtml_cmd, gcov_tool, branch_coverage, exclude_line):
    """Merge two or more coverage records (summing counts)."""
    ws = mk_workspace(root)
    config = mk_lcov_config(lcov_cmd, genhtml_cmd, gcov_tool, branch_coverage, exclude_line)
    try:
        cli_subcommands.do_merge(
            [ws.root / p for p in inputs], ws.root / output, config, ws
        )
    except ValueError as e:
        raise click.UsageError(str(e))
    except CoveragePipelineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@root_option
@click.argument("input")
@click.option("-o", "--output", required=True, help="Filtered coverage record to write.")
@click.option("--owned-root", "owned_roots", multiple=True, envvar="COVPIPE_OWNED_ROOTS")
def filter(root, input, output, owned_roots):
    """Keep only records for files under the owned source roots."""
    ws = mk_workspace(root)
    roots = cli_subcommands.resolve_owned_roots(ws, owned_roots)
    try:
        cli_subcommands.do_filter(ws.root / input, ws.root / output, roots, ws)
    except (CoveragePipelineError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("info", type=click.Path(path_type=Path))
@click.option("--per-file", is_flag=True, help="Also show each file's hit/found counts.")
def summary(info: Path, per_file: bool):
    """Show line and branch coverage totals of a coverage record."""
    try:
        cli_subcommands.do_summary(info, per_file)
    except (CoveragePipelineError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@root_option
@click.option("--keep", multiple=True, help="Coverage record to keep. Repeatable.")
def clean(root, keep):
    """Remove instrumented build output, reports, and coverage records."""
    ws = mk_workspace(root)
    kept = cli_subcommands.do_clean(ws, keep)
    for k in kept:
        click.echo(f"Kept {k.name}")


if __name__ == "__main__":
    cli()
