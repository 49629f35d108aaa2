from dataclasses import dataclass
from typing import Mapping

"""
Instrumentation settings for a coverage build.

Each field corresponds to one compiler knob that must be set for the
counter files to be trustworthy. They are bundled in a single value that
is passed explicitly to the build step, instead of being scattered across
environment variables that a caller could forget to export.
"""


@dataclass(frozen=True)
class InstrumentationConfig:
    # Disable optimizations so that line attribution stays accurate.
    opt_level: int = 0
    # A single codegen unit makes counter files map 1:1 to compile units.
    codegen_units: int = 1
    # Stale incremental state corrupts counters.
    incremental: bool = False
    # With unwinding disabled every block is reachable by counting; landing
    # pads would otherwise be double counted or unreachable.
    unwind: bool = False
    # Runtime library providing the counter-emission hooks.
    runtime_lib: str | None = "gcov"
    # gcov-style instrumentation. Only nightly rustc accepts `-Zprofile`, and
    # recent nightlies have dropped it; pin an older nightly through
    # COVPIPE_CARGO_TOOLCHAIN_SPEC (e.g. `nightly-2024-10-01`).
    profiling_flag: str = "-Zprofile"
    link_dead_code: bool = True

    def __post_init__(self):
        if self.opt_level < 0:
            raise ValueError(f"opt_level must be non-negative, got {self.opt_level}")
        if self.codegen_units < 1:
            raise ValueError(f"codegen_units must be at least 1, got {self.codegen_units}")
        if not self.profiling_flag.strip():
            raise ValueError("profiling_flag must not be empty")

    def rustflags(self) -> list[str]:
        flags = [
            self.profiling_flag,
            "-C",
            f"opt-level={self.opt_level}",
            "-C",
            f"codegen-units={self.codegen_units}",
            "-C",
            "overflow-checks=off",
        ]
        if self.link_dead_code:
            flags.extend(["-C", "link-dead-code"])
        if not self.unwind:
            flags.extend(["-C", "panic=abort", "-Z", "panic_abort_tests"])
        if self.runtime_lib:
            flags.extend(["-C", f"link-arg=-l{self.runtime_lib}"])
        return flags

    def env_ext(self, base_env: Mapping[str, str]) -> dict[str, str]:
        # Per https://doc.rust-lang.org/cargo/reference/config.html#buildrustflags
        # RUSTFLAGS and --config settings are not merged, and
        # CARGO_ENCODED_RUSTFLAGS takes precedence over RUSTFLAGS. So we fold
        # any existing RUSTFLAGS in first and then append our own.
        rustflags_parts = base_env.get("RUSTFLAGS", "").split()
        rustflags_parts.extend(self.rustflags())
        return {
            "CARGO_INCREMENTAL": "1" if self.incremental else "0",
            "CARGO_ENCODED_RUSTFLAGS": "\x1f".join(rustflags_parts),
        }
