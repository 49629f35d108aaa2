class CoveragePipelineError(Exception):
    """Base class for every failure that aborts the coverage pipeline.

    `step` names the pipeline state that raised the error, and `returncode`
    carries the exit status of the offending subprocess when there was one.
    """

    def __init__(self, message: str, step: str | None = None, returncode: int | None = None):
        super().__init__(message)
        self.step = step
        self.returncode = returncode


class BuildFailure(CoveragePipelineError):
    """The compiler rejected the target, or produced nothing we can run."""


class TestFailure(CoveragePipelineError):
    """An instrumented test artifact exited nonzero."""

    # Keep pytest from trying to collect this as a test class.
    __test__ = False


class NoCounterData(CoveragePipelineError):
    """The translator found no counter files: instrumentation was not active."""


class MissingInputRecord(CoveragePipelineError):
    """A stage was handed a coverage record path that does not exist."""


class RenderFailure(CoveragePipelineError):
    """The HTML renderer failed. The filtered record is still on disk."""
