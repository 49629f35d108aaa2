from pathlib import Path
from typing import Sequence

import click

import hermetic
import lcov_tools
from errors import CoveragePipelineError, NoCounterData, TestFailure
from lcov_tools import LcovConfig
from targets import BuildTarget
from tracefile import Tracefile
from workspace import Workspace


def run_artifacts(target: BuildTarget, ws: Workspace, test_args: Sequence[str] = ()) -> None:
    """Runs each of the target's test executables to completion, in order.

    Counter files are written as a side effect. Any nonzero exit aborts:
    coverage over failing tests is not meaningful.
    """
    info = ws.info_path(target.info_name)
    # Whatever happens below, a record from an earlier run must not survive
    # to be mistaken for this run's.
    info.unlink(missing_ok=True)

    if not target.artifacts:
        raise TestFailure(f"Target '{target.name}' has no built test executables")

    for artifact in target.artifacts:
        try:
            cp = hermetic.run([artifact, *test_args], cwd=ws.root, check=False)
        except OSError as e:
            raise TestFailure(f"Could not run {artifact}: {e}")
        if cp.returncode != 0:
            raise TestFailure(
                f"Tests in {artifact.name} (target '{target.name}') failed "
                f"with exit code {cp.returncode}",
                returncode=cp.returncode,
            )


def translate_counters(target: BuildTarget, config: LcovConfig, ws: Workspace) -> Path:
    """Converts the raw counter tree into `<target>.info` in the workspace root.

    Both the search directory and the base directory are the workspace root,
    so that relative paths in the record do not depend on where we run from.
    """
    output = ws.info_path(target.info_name)
    args = config.capture_args(directory=ws.root, base_directory=ws.root, output=output)
    try:
        cp = lcov_tools.run_tool(args, cwd=ws.root)
    except FileNotFoundError as e:
        raise NoCounterData(f"Could not run the translator: {e}")

    if lcov_tools.reports_no_counter_data(cp):
        output.unlink(missing_ok=True)
        raise NoCounterData(
            f"No counter data found for target '{target.name}'; "
            "was the build actually instrumented?\n" + lcov_tools.tool_output(cp),
            returncode=cp.returncode,
        )
    if cp.returncode != 0:
        output.unlink(missing_ok=True)
        raise NoCounterData(
            f"Capturing coverage for target '{target.name}' failed "
            f"with exit code {cp.returncode}\n" + lcov_tools.tool_output(cp),
            returncode=cp.returncode,
        )
    if not output.is_file():
        raise NoCounterData(f"Translator produced no coverage records for target '{target.name}'")
    try:
        records = len(Tracefile.load(output))
    except (ValueError, UnicodeDecodeError) as e:
        output.unlink(missing_ok=True)
        raise CoveragePipelineError(
            f"Translator wrote an unreadable coverage record for target '{target.name}': {e}"
        ) from e
    if records == 0:
        output.unlink(missing_ok=True)
        raise NoCounterData(f"Translator produced no coverage records for target '{target.name}'")

    return output


def capture(
    target: BuildTarget, config: LcovConfig, ws: Workspace, test_args: Sequence[str] = ()
) -> Path:
    run_artifacts(target, ws, test_args)
    counters = ws.counter_files()
    click.echo(f"Target {target.name} emitted {len(counters)} counter file(s)")
    return translate_counters(target, config, ws)
