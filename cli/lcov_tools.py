import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import constants
import hermetic

# Diagnostics lcov/geninfo print when there was nothing to capture.
# Checked only when lcov exits nonzero.
NO_COUNTER_DATA_MARKERS = (
    "no .gcda files found",
    "no valid records found",
)


@dataclass(frozen=True)
class LcovConfig:
    """How to invoke the translator (lcov) and the renderer (genhtml).

    `lcov` and `genhtml` are command prefixes, so that a wrapper (or an
    interpreter plus script) can stand in for the real tool.
    """

    lcov: Sequence[str] = ("lcov",)
    genhtml: Sequence[str] = ("genhtml",)
    # Tool that turns .gcno/.gcda pairs into per-file counts. For Rust this is
    # usually a wrapper around `llvm-cov gcov`.
    gcov_tool: str | None = None
    branch_coverage: bool = True
    exclude_line_pattern: str | None = constants.DEFAULT_ASSERT_EXCLUSION_PATTERN
    extra_args: Sequence[str] = field(default_factory=tuple)

    def common_args(self) -> list[str]:
        args: list[str] = []
        if self.gcov_tool:
            args.extend(["--gcov-tool", self.gcov_tool])
        if self.branch_coverage:
            args.extend(["--rc", "lcov_branch_coverage=1"])
        if self.exclude_line_pattern:
            args.extend(["--rc", f"lcov_excl_line={self.exclude_line_pattern}"])
        args.extend(self.extra_args)
        return args

    def capture_args(self, directory: Path, base_directory: Path, output: Path) -> list[str]:
        return [
            *self.lcov,
            *self.common_args(),
            "--capture",
            "--directory",
            str(directory),
            "--base-directory",
            str(base_directory),
            "--output-file",
            str(output),
        ]

    def merge_args(self, inputs: Sequence[Path], output: Path) -> list[str]:
        adds: list[str] = []
        for p in inputs:
            adds.extend(["--add-tracefile", str(p)])
        return [*self.lcov, *self.common_args(), *adds, "--output-file", str(output)]

    def render_args(self, tracefile: Path, output_dir: Path) -> list[str]:
        args = [*self.genhtml]
        if self.branch_coverage:
            args.append("--branch-coverage")
        args.extend([
            "--demangle-cpp",
            "--ignore-errors",
            "source",
            "--output-directory",
            str(output_dir),
            str(tracefile),
        ])
        return args


def run_tool(args: Sequence[str], cwd: Path) -> subprocess.CompletedProcess:
    """Runs lcov or genhtml with output captured as text.

    Raises FileNotFoundError if the tool itself cannot be found.
    """
    return hermetic.run(args, cwd=cwd, check=False, capture_output=True, text=True)


def reports_no_counter_data(cp: subprocess.CompletedProcess) -> bool:
    if cp.returncode == 0:
        return False
    output = f"{cp.stdout or ''}\n{cp.stderr or ''}".lower()
    return any(marker in output for marker in NO_COUNTER_DATA_MARKERS)


def tool_output(cp: subprocess.CompletedProcess) -> str:
    return "\n".join(s.rstrip() for s in (cp.stdout, cp.stderr) if s and s.strip())
