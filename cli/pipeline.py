import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

import click

import constants
import counter_capture
import coverage_stages
import instrumented_build
import targets
from errors import CoveragePipelineError
from instrumentation import InstrumentationConfig
from instrumented_build import BuildOptions
from lcov_tools import LcovConfig
from targets import BuildTarget
from tracefile import Tracefile
from workspace import Workspace

"""
The coverage pipeline as an explicit state machine:

    CLEAN -> BUILD_UNIT -> CAPTURE_UNIT -> CLEAN_KEEPING_UNIT_RECORD
          -> BUILD_INTEGRATION -> CAPTURE_INTEGRATION -> MERGE -> FILTER
          -> [RENDER] -> DONE

Each transition happens only when the previous state's work succeeded.
Any `CoveragePipelineError` moves the machine to FAILED, which keeps the
error. A stray `OSError` or `ValueError` is wrapped in one and does the
same. States run strictly one after another; the workspace directory is
only ever touched by the state currently running.
"""


class PipelineState(Enum):
    CLEAN = "clean"
    BUILD_UNIT = "build-unit"
    CAPTURE_UNIT = "capture-unit"
    CLEAN_KEEPING_UNIT_RECORD = "clean-keeping-unit-record"
    BUILD_INTEGRATION = "build-integration"
    CAPTURE_INTEGRATION = "capture-integration"
    MERGE = "merge"
    FILTER = "filter"
    RENDER = "render"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: dict[PipelineState, tuple[PipelineState, ...]] = {
    PipelineState.CLEAN: (PipelineState.BUILD_UNIT,),
    PipelineState.BUILD_UNIT: (PipelineState.CAPTURE_UNIT,),
    PipelineState.CAPTURE_UNIT: (PipelineState.CLEAN_KEEPING_UNIT_RECORD,),
    PipelineState.CLEAN_KEEPING_UNIT_RECORD: (PipelineState.BUILD_INTEGRATION,),
    PipelineState.BUILD_INTEGRATION: (PipelineState.CAPTURE_INTEGRATION,),
    PipelineState.CAPTURE_INTEGRATION: (PipelineState.MERGE,),
    PipelineState.MERGE: (PipelineState.FILTER,),
    PipelineState.FILTER: (PipelineState.RENDER, PipelineState.DONE),
    PipelineState.RENDER: (PipelineState.DONE,),
    PipelineState.DONE: (),
    PipelineState.FAILED: (),
}


@dataclass
class Interval:
    start_ns: int
    end_ns: int

    def duration_ms_int(self) -> int:
        """Duration in milliseconds (rounded down)"""
        return (self.end_ns - self.start_ns) // 1_000_000


@dataclass
class StepRecord:
    state: PipelineState
    elapsed_ms: int
    succeeded: bool


class StepTracker:
    def __init__(self) -> None:
        self.steps: list[StepRecord] = []

    @contextmanager
    def tracking(self, state: PipelineState):
        """Context manager to time one pipeline state"""
        click.echo(f": {state.value}")
        start_time = time.monotonic_ns()
        succeeded = False
        try:
            yield self
            succeeded = True
        finally:
            interval = Interval(start_time, time.monotonic_ns())
            self.steps.append(StepRecord(state, interval.duration_ms_int(), succeeded))

    def describe(self) -> str:
        return "\n".join(
            f"  {s.state.value:<28} {s.elapsed_ms:>8} ms{'' if s.succeeded else '  (failed)'}"
            for s in self.steps
        )


@dataclass
class Stages:
    """The operations the pipeline sequences. Replaceable for testing."""

    build: Callable[
        [BuildTarget, InstrumentationConfig, BuildOptions, Workspace], BuildTarget
    ] = instrumented_build.build_target
    capture: Callable[
        [BuildTarget, LcovConfig, Workspace, Sequence[str]], Path
    ] = counter_capture.capture
    merge: Callable[
        [Sequence[Path], Path, LcovConfig, Workspace], Path
    ] = coverage_stages.merge_records
    filter: Callable[
        [Path, Path, Sequence[Path], Path], Tracefile
    ] = coverage_stages.filter_record
    render: Callable[[Path, Path, LcovConfig, Workspace], Path] = coverage_stages.render_report


@dataclass
class PipelineConfig:
    workspace: Workspace
    owned_roots: Sequence[Path]
    instrumentation: InstrumentationConfig = field(default_factory=InstrumentationConfig)
    build: BuildOptions = field(default_factory=BuildOptions)
    lcov: LcovConfig = field(default_factory=LcovConfig)
    render: bool = True
    integration_test: str | None = None
    test_args: Sequence[str] = ()


@dataclass
class PipelineResult:
    state: PipelineState
    error: CoveragePipelineError | None = None
    records: dict[str, Path] = field(default_factory=dict)
    visited: list[PipelineState] = field(default_factory=list)
    filtered: Tracefile | None = None
    report_dir: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class CoveragePipeline:
    def __init__(self, config: PipelineConfig, stages: Stages | None = None):
        self.config = config
        self.stages = stages or Stages()
        self.tracker = StepTracker()
        self.unit, self.integration = targets.default_targets(config.integration_test)
        self.result = PipelineResult(state=PipelineState.CLEAN)

    @property
    def ws(self) -> Workspace:
        return self.config.workspace

    def _advance(self, next_state: PipelineState):
        current = self.result.state
        if next_state not in TRANSITIONS[current]:
            raise RuntimeError(f"Illegal pipeline transition {current.value} -> {next_state.value}")
        self.result.state = next_state

    def _actions(self) -> dict[PipelineState, Callable[[], None]]:
        return {
            PipelineState.CLEAN: self._clean,
            PipelineState.BUILD_UNIT: lambda: self._build(self.unit),
            PipelineState.CAPTURE_UNIT: lambda: self._capture(self.unit),
            PipelineState.CLEAN_KEEPING_UNIT_RECORD: self._clean_keeping_unit_record,
            PipelineState.BUILD_INTEGRATION: lambda: self._build(self.integration),
            PipelineState.CAPTURE_INTEGRATION: lambda: self._capture(self.integration),
            PipelineState.MERGE: self._merge,
            PipelineState.FILTER: self._filter,
            PipelineState.RENDER: self._render,
        }

    def run(self) -> PipelineResult:
        actions = self._actions()
        state = PipelineState.CLEAN
        while state != PipelineState.DONE:
            self.result.visited.append(state)
            try:
                with self.tracker.tracking(state):
                    actions[state]()
            except CoveragePipelineError as e:
                if e.step is None:
                    e.step = state.value
                return self._fail(e)
            except (OSError, ValueError) as e:
                # Filesystem trouble or bad input outside the stages' own checks.
                err = CoveragePipelineError(str(e), step=state.value)
                err.__cause__ = e
                return self._fail(err)

            state = self._next_after(state)
            self._advance(state)

        self.result.visited.append(PipelineState.DONE)
        return self.result

    def _fail(self, error: CoveragePipelineError) -> PipelineResult:
        self.result.error = error
        self.result.state = PipelineState.FAILED
        return self.result

    def _next_after(self, state: PipelineState) -> PipelineState:
        if state == PipelineState.FILTER:
            return PipelineState.RENDER if self.config.render else PipelineState.DONE
        return TRANSITIONS[state][0]

    # Individual states. Each names what it expects of the workspace and
    # what it leaves behind.

    def _clean(self):
        # Expects: anything. Leaves: no build output, counters, or records.
        try:
            self.ws.clean()
        except OSError as e:
            raise CoveragePipelineError(f"Could not clean {self.ws.root}: {e}") from e

    def _build(self, target: BuildTarget):
        # Expects: no build output. Leaves: artifacts for `target`, no counters.
        self.stages.build(target, self.config.instrumentation, self.config.build, self.ws)

    def _capture(self, target: BuildTarget):
        # Expects: artifacts for `target`. Leaves: `<target>.info`.
        self.result.records[target.name] = self.stages.capture(
            target, self.config.lcov, self.ws, self.config.test_args
        )

    def _clean_keeping_unit_record(self):
        # Expects: unit artifacts, counters and `unit.info`. Leaves: only `unit.info`.
        try:
            self.ws.preserve_and_clean(keep=[self.unit.info_name])
        except OSError as e:
            raise CoveragePipelineError(f"Could not clean {self.ws.root}: {e}") from e

    def _merge(self):
        inputs = [
            self.ws.info_path(self.unit.info_name),
            self.ws.info_path(self.integration.info_name),
        ]
        merged = self.ws.info_path(constants.MERGED_INFO_FILENAME)
        self.result.records["merged"] = self.stages.merge(inputs, merged, self.config.lcov, self.ws)

    def _filter(self):
        final = self.ws.info_path(constants.FINAL_INFO_FILENAME)
        self.result.filtered = self.stages.filter(
            self.ws.info_path(constants.MERGED_INFO_FILENAME),
            final,
            self.config.owned_roots,
            self.ws.root,
        )
        self.result.records["final"] = final

    def _render(self):
        self.result.report_dir = self.stages.render(
            self.ws.info_path(constants.FINAL_INFO_FILENAME),
            self.ws.report_dir,
            self.config.lcov,
            self.ws,
        )
