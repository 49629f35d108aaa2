from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence, TypeAlias

"""
Reading and writing lcov tracefiles ("info files").

A tracefile is a sequence of per-source-file records:

    TN:<test name>                      (optional, applies to following records)
    SF:<source file path>
    FN:<line>,<function name>
    FNDA:<hit count>,<function name>
    FNF:<functions found>
    FNH:<functions hit>
    BRDA:<line>,<block>,<branch>,<taken count or '-'>
    BRF:<branches found>
    BRH:<branches hit>
    DA:<line>,<hit count>[,<checksum>]
    LF:<lines found>
    LH:<lines hit>
    end_of_record

A file absent from a tracefile was not observed at all; a file present
with every `DA` count at zero was observed and never executed.

Records keep the exact text they were read from, so a tracefile that is
only subset (never modified) is written back out byte-for-byte. Count
arithmetic is the translator's business, not ours; this module only
parses counts for reporting and for validation.
"""

LineNumber: TypeAlias = int
BranchKey: TypeAlias = tuple[int, str, str]
"""(line, block, branch) as in a `BRDA` entry.

Block and branch are kept as written: lcov 2 prefixes exception-branch
blocks with `e` and may name a branch by its source expression.
"""


@dataclass
class SourceRecord:
    """
    Coverage for one source file.

    Attributes
    ----------
    source_file : str
        The `SF:` path, exactly as written by the translator. It may be
        relative to the translator's base directory.
    lines : dict[int, int]
        Execution count per line.
    branches : dict[BranchKey, int | None]
        Taken count per branch; None for '-' (the branch's condition was
        never evaluated).
    functions : dict[str, tuple[int, int]]
        Function name to (first line, hit count).
    text : list[str]
        The record's lines, from its `TN:`/`SF:` line through `end_of_record`.
    """

    source_file: str
    lines: dict[LineNumber, int] = field(default_factory=dict)
    branches: dict[BranchKey, int | None] = field(default_factory=dict)
    functions: dict[str, tuple[int, int]] = field(default_factory=dict)
    test_name: str | None = None
    text: list[str] = field(default_factory=list)

    @property
    def lines_found(self) -> int:
        return len(self.lines)

    @property
    def lines_hit(self) -> int:
        return sum(1 for hits in self.lines.values() if hits > 0)

    @property
    def branches_found(self) -> int:
        return len(self.branches)

    @property
    def branches_hit(self) -> int:
        return sum(1 for taken in self.branches.values() if taken is not None and taken > 0)

    def covered_lines(self) -> set[LineNumber]:
        return {line for line, hits in self.lines.items() if hits > 0}

    def resolved_path(self, base_dir: Path) -> Path:
        path = Path(self.source_file)
        if not path.is_absolute():
            path = base_dir / path
        return path.resolve()


@dataclass
class Summary:
    files: int = 0
    lines_found: int = 0
    lines_hit: int = 0
    branches_found: int = 0
    branches_hit: int = 0

    def add(self, record: SourceRecord):
        self.files += 1
        self.lines_found += record.lines_found
        self.lines_hit += record.lines_hit
        self.branches_found += record.branches_found
        self.branches_hit += record.branches_hit

    @staticmethod
    def _rate(hit: int, found: int) -> float:
        return hit / found if found > 0 else 0.0

    @property
    def line_rate(self) -> float:
        return self._rate(self.lines_hit, self.lines_found)

    @property
    def branch_rate(self) -> float:
        return self._rate(self.branches_hit, self.branches_found)


def _parse_count(s: str, what: str) -> int:
    try:
        count = int(s)
    except ValueError:
        raise ValueError(f"Invalid {what} count: {s!r}")
    if count < 0:
        raise ValueError(f"Negative {what} count: {count}")
    return count


def _parse_function_decl(rest: str) -> tuple[int, str]:
    # lcov 1.x writes FN:<line>,<name>; lcov 2.x writes FN:<line>,<end line>,<name>.
    # Function names may themselves contain commas (e.g. generic parameters).
    parts = rest.split(",", 2)
    if len(parts) == 3 and parts[1].isdigit():
        return int(parts[0]), parts[2]
    line, name = rest.split(",", 1)
    return int(line), name


class Tracefile:
    """An ordered sequence of `SourceRecord`s."""

    def __init__(self, records: Iterable[SourceRecord] = ()):
        self.records: list[SourceRecord] = list(records)

    def __len__(self) -> int:
        return len(self.records)

    def __eq__(self, other) -> bool:
        return isinstance(other, Tracefile) and self.dumps() == other.dumps()

    def source_files(self) -> list[str]:
        return [r.source_file for r in self.records]

    def get(self, source_file: str) -> SourceRecord | None:
        for r in self.records:
            if r.source_file == source_file:
                return r
        return None

    @staticmethod
    def loads(content: str) -> "Tracefile":
        records: list[SourceRecord] = []
        test_name: str | None = None
        tn_line: str | None = None
        current: SourceRecord | None = None
        fn_lines: dict[str, int] = {}

        for lineno, raw in enumerate(content.splitlines(), start=1):
            line = raw.strip()
            if not line:
                continue

            if line == "end_of_record":
                if current is None:
                    raise ValueError(f"line {lineno}: end_of_record outside of a record")
                current.text.append(line)
                records.append(current)
                current = None
                tn_line = None
                continue

            key, sep, rest = line.partition(":")
            if not sep:
                raise ValueError(f"line {lineno}: malformed tracefile line {line!r}")

            if key == "TN":
                test_name = rest or None
                tn_line = line
                continue

            if key == "SF":
                if current is not None:
                    raise ValueError(f"line {lineno}: SF before end_of_record")
                current = SourceRecord(source_file=rest, test_name=test_name)
                if tn_line is not None:
                    current.text.append(tn_line)
                current.text.append(line)
                fn_lines = {}
                continue

            if current is None:
                if key == "VER":
                    continue
                raise ValueError(f"line {lineno}: {key} outside of a record")

            current.text.append(line)
            try:
                match key:
                    case "DA":
                        fields = rest.split(",")
                        current.lines[int(fields[0])] = _parse_count(fields[1], "line")
                    case "BRDA":
                        bline, tail = rest.split(",", 1)
                        tail, taken = tail.rsplit(",", 1)
                        block, branch = tail.split(",", 1)
                        current.branches[(int(bline), block, branch)] = (
                            None if taken == "-" else _parse_count(taken, "branch")
                        )
                    case "FN":
                        fline, name = _parse_function_decl(rest)
                        fn_lines[name] = fline
                        current.functions.setdefault(name, (fline, 0))
                    case "FNDA":
                        hits, name = rest.split(",", 1)
                        fline = fn_lines.get(name, 0)
                        current.functions[name] = (fline, _parse_count(hits, "function"))
                    case _:
                        # LF/LH/BRF/BRH/FNF/FNH are derived; anything newer
                        # than we know about is carried along verbatim.
                        pass
            except (IndexError, ValueError) as e:
                raise ValueError(f"line {lineno}: {e}") from e

        if current is not None:
            raise ValueError(f"Unterminated record for {current.source_file}")

        return Tracefile(records)

    @staticmethod
    def load(filepath: Path | str) -> "Tracefile":
        with open(filepath, "r", encoding="utf-8") as f:
            return Tracefile.loads(f.read())

    def dumps(self) -> str:
        out = []
        for r in self.records:
            out.extend(r.text)
        return "".join(line + "\n" for line in out)

    def save(self, filepath: Path | str):
        with open(filepath, "w", encoding="utf-8", newline="\n") as f:
            f.write(self.dumps())

    def restricted_to(self, roots: Sequence[Path], base_dir: Path) -> "Tracefile":
        """Keeps only records whose source file, once resolved, lies under a root.

        Relative `SF:` paths are taken relative to `base_dir`. The check is on
        resolved paths, so `/p/src-other/x.rs` is not within `/p/src`, while
        `/p/vendor/../src/x.rs` is.
        """
        resolved_roots = [Path(r).resolve() for r in roots]
        return Tracefile(
            r
            for r in self.records
            if any(r.resolved_path(base_dir).is_relative_to(root) for root in resolved_roots)
        )

    def summary(self) -> Summary:
        s = Summary()
        for r in self.records:
            s.add(r)
        return s


def format_record(
    source_file: str,
    lines: dict[LineNumber, int],
    branches: dict[BranchKey, int | None] | None = None,
    functions: dict[str, tuple[int, int]] | None = None,
    test_name: str | None = None,
) -> SourceRecord:
    """Builds a `SourceRecord` along with its canonical tracefile text."""
    branches = branches or {}
    functions = functions or {}
    record = SourceRecord(
        source_file=source_file,
        lines=dict(lines),
        branches=dict(branches),
        functions=dict(functions),
        test_name=test_name,
    )

    text = []
    if test_name is not None:
        text.append(f"TN:{test_name}")
    text.append(f"SF:{source_file}")
    ordered_fns = sorted(functions.items(), key=lambda kv: (kv[1][0], kv[0]))
    for name, (fline, _) in ordered_fns:
        text.append(f"FN:{fline},{name}")
    for name, (_, hits) in ordered_fns:
        text.append(f"FNDA:{hits},{name}")
    text.append(f"FNF:{len(functions)}")
    text.append(f"FNH:{sum(1 for _, hits in functions.values() if hits > 0)}")
    for (bline, block, branch), taken in sorted(branches.items()):
        text.append(f"BRDA:{bline},{block},{branch},{'-' if taken is None else taken}")
    text.append(f"BRF:{record.branches_found}")
    text.append(f"BRH:{record.branches_hit}")
    for line in sorted(lines):
        text.append(f"DA:{line},{lines[line]}")
    text.append(f"LF:{record.lines_found}")
    text.append(f"LH:{record.lines_hit}")
    text.append("end_of_record")
    record.text = text
    return record
