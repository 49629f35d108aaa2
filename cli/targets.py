from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeAlias

import constants

"""
A coverage run tests two kinds of build target: the library's own unit
tests (compiled into the library crate's test harness) and the integration
tests (separate crates under `tests/`). They are built and run separately
so that each produces its own coverage record, which are merged later.
"""


class TargetKind(Enum):
    LIBRARY_TEST = "library-test"
    INTEGRATION_TEST = "integration-test"

    def cargo_selector_args(self, test_name: str | None = None) -> list[str]:
        match self:
            case TargetKind.LIBRARY_TEST:
                return ["--lib"]
            case TargetKind.INTEGRATION_TEST:
                return ["--test", test_name or "*"]
            case _:
                raise ValueError(f"Unknown TargetKind: {self}")


BuildTargetName: TypeAlias = str


@dataclass
class BuildTarget:
    name: BuildTargetName
    kind: TargetKind
    # For integration tests, the `--test` selector; None means all of them.
    test_name: str | None = None
    artifacts: list[Path] = field(default_factory=list)

    def cargo_selector_args(self) -> list[str]:
        return self.kind.cargo_selector_args(self.test_name)

    @property
    def info_name(self) -> str:
        return constants.info_filename(self.name)


def default_targets(integration_test: str | None = None) -> tuple[BuildTarget, BuildTarget]:
    return (
        BuildTarget(constants.UNIT_TARGET_NAME, TargetKind.LIBRARY_TEST),
        BuildTarget(
            constants.INTEGRATION_TARGET_NAME,
            TargetKind.INTEGRATION_TEST,
            test_name=integration_test,
        ),
    )
