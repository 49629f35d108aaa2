from pathlib import Path
from typing import Sequence

import click

import lcov_tools
from errors import CoveragePipelineError, MissingInputRecord, RenderFailure
from lcov_tools import LcovConfig
from tracefile import Tracefile
from workspace import Workspace


def _require_records(paths: Sequence[Path]) -> None:
    missing = [p for p in paths if not p.is_file()]
    if missing:
        raise MissingInputRecord(
            "Missing coverage record(s): " + ", ".join(p.as_posix() for p in missing)
        )


def merge_records(
    inputs: Sequence[Path], output: Path, config: LcovConfig, ws: Workspace
) -> Path:
    """Merges two or more coverage records into `output` via `lcov --add-tracefile`.

    Counts for the same (file, line) or (file, branch) are summed by lcov;
    this function only checks the inputs exist and assembles the command.
    """
    if len(inputs) < 2:
        raise ValueError(f"Merging needs at least two coverage records, got {len(inputs)}")
    _require_records(inputs)

    output.unlink(missing_ok=True)
    try:
        cp = lcov_tools.run_tool(config.merge_args(inputs, output), cwd=ws.root)
    except FileNotFoundError as e:
        raise CoveragePipelineError(f"Could not run the translator: {e}")
    if cp.returncode != 0 or not output.is_file():
        output.unlink(missing_ok=True)
        raise CoveragePipelineError(
            f"Merging {len(inputs)} coverage records failed with exit code {cp.returncode}\n"
            + lcov_tools.tool_output(cp),
            returncode=cp.returncode,
        )
    return output


def filter_record(
    input: Path, output: Path, owned_roots: Sequence[Path], base_dir: Path
) -> Tracefile:
    """Writes to `output` only the records of `input` for files under `owned_roots`.

    Paths are compared after resolution (symlinks, `..`), never as string
    prefixes. Filtering an already-filtered record with the same roots
    reproduces it exactly.
    """
    _require_records([input])
    if not owned_roots:
        raise ValueError("At least one owned source root is required for filtering")

    try:
        unfiltered = Tracefile.load(input)
    except (ValueError, UnicodeDecodeError) as e:
        raise CoveragePipelineError(f"Could not read coverage record {input}: {e}") from e
    filtered = unfiltered.restricted_to(owned_roots, base_dir)
    filtered.save(output)

    dropped = len(unfiltered) - len(filtered)
    click.echo(f"Kept {len(filtered)} of {len(unfiltered)} source file(s); dropped {dropped}")
    return filtered


def render_report(tracefile: Path, output_dir: Path, config: LcovConfig, ws: Workspace) -> Path:
    _require_records([tracefile])
    try:
        cp = lcov_tools.run_tool(config.render_args(tracefile, output_dir), cwd=ws.root)
    except FileNotFoundError as e:
        raise RenderFailure(f"Could not run the renderer: {e}")
    if cp.returncode != 0:
        raise RenderFailure(
            f"Rendering {tracefile.name} failed with exit code {cp.returncode}; "
            f"{tracefile.name} itself is complete.\n" + lcov_tools.tool_output(cp),
            returncode=cp.returncode,
        )
    return output_dir
