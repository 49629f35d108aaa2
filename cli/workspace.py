import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Collection

import constants

"""
The working directory tree is the one resource every pipeline stage
mutates. `Workspace` names the parts of that tree the pipeline owns, and
the operations stages use to put it into a known state:

    root/
        <target>.info, coverage.info, final.info   coverage records
        target/instrumented/                       instrumented cargo build
        target/coverage/                           rendered HTML report

Nothing else under `root` is touched.
"""


@dataclass(frozen=True)
class Workspace:
    root: Path
    build_dir: Path
    report_dir: Path

    @staticmethod
    def at(root: Path) -> "Workspace":
        root = root.absolute()
        return Workspace(
            root=root,
            build_dir=root / constants.INSTRUMENTED_BUILD_DIRNAME,
            report_dir=root / constants.REPORT_DIRNAME,
        )

    def info_path(self, name: str) -> Path:
        return self.root / name

    def info_files(self) -> list[Path]:
        """The pipeline's own coverage records that currently exist in the root."""
        return sorted(
            p
            for p in (self.info_path(n) for n in constants.PIPELINE_RECORD_FILENAMES)
            if p.is_file()
        )

    def preserve_and_clean(self, keep: Collection[str | Path] = ()) -> list[Path]:
        """Removes build output, counter files, the report directory, and every
        pipeline-produced coverage record in the root except those named in
        `keep`. Other `.info` files are left alone.

        Returns the coverage records that were kept (and exist).
        """
        kept = {self.info_path(Path(k).name) for k in keep}

        for d in (self.build_dir, self.report_dir):
            if d.is_dir():
                shutil.rmtree(d)

        survivors = []
        for info in self.info_files():
            if info in kept:
                survivors.append(info)
            else:
                info.unlink()
        return survivors

    def clean(self) -> None:
        self.preserve_and_clean(())

    def remove_dependency_metadata(self) -> list[Path]:
        """Deletes the compiler's `.d` dependency-tracking files."""
        return self._remove_matching(constants.DEPENDENCY_METADATA_GLOB)

    def counter_files(self) -> list[Path]:
        if not self.build_dir.is_dir():
            return []
        return sorted(self.build_dir.rglob(constants.COUNTER_FILE_GLOB))

    def remove_counter_files(self) -> list[Path]:
        return self._remove_matching(constants.COUNTER_FILE_GLOB)

    def _remove_matching(self, pattern: str) -> list[Path]:
        if not self.build_dir.is_dir():
            return []
        removed = []
        for p in sorted(self.build_dir.rglob(pattern)):
            if p.is_file():
                p.unlink()
                removed.append(p)
        return removed
