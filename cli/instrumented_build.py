import json
import subprocess
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import click

import hermetic
from errors import BuildFailure
from instrumentation import InstrumentationConfig
from targets import BuildTarget
from workspace import Workspace


@dataclass(frozen=True)
class BuildOptions:
    cargo: Sequence[str] = ("cargo",)
    release: bool = False
    features: Sequence[str] = field(default_factory=tuple)
    all_features: bool = False
    no_default_features: bool = False

    def feature_args(self) -> list[str]:
        args = []
        if self.all_features:
            args.append("--all-features")
        if self.no_default_features:
            args.append("--no-default-features")
        if self.features:
            args.extend(["--features", ",".join(self.features)])
        return args


def cargo_test_no_run_args(target: BuildTarget, options: BuildOptions, ws: Workspace) -> list[str]:
    args = [
        "test",
        "--no-run",
        "--message-format=json",
        "--target-dir",
        str(ws.build_dir),
        *target.cargo_selector_args(),
        *options.feature_args(),
    ]
    if options.release:
        args.append("--release")
    return args


def executables_from_cargo_messages(stdout: str) -> list[Path]:
    """Extracts test executables from cargo's `--message-format=json` stream.

    Cargo interleaves one JSON object per line; we want `compiler-artifact`
    messages for test-profile builds that produced an executable.
    """
    executables: list[Path] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            msg: dict[str, Any] = json.loads(line)
        except json.JSONDecodeError:
            continue
        if msg.get("reason") != "compiler-artifact":
            continue
        exe = msg.get("executable")
        profile = msg.get("profile") or {}
        if exe and profile.get("test", False):
            p = Path(exe)
            if p not in executables:
                executables.append(p)
    return executables


def compiler_diagnostics_from_cargo_messages(stdout: str) -> str:
    """Collects rustc's rendered diagnostics from cargo's JSON stream.

    With `--message-format=json`, cargo forwards compiler errors on stdout
    as `compiler-message` objects rather than printing them to stderr.
    """
    rendered: list[str] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            msg: dict[str, Any] = json.loads(line)
        except json.JSONDecodeError:
            continue
        if msg.get("reason") != "compiler-message":
            continue
        text = (msg.get("message") or {}).get("rendered")
        if text:
            rendered.append(text.rstrip("\n"))
    return "\n".join(rendered)


def build_target(
    target: BuildTarget,
    instrumentation: InstrumentationConfig,
    options: BuildOptions,
    ws: Workspace,
) -> BuildTarget:
    """Compiles `target` with instrumentation into the workspace's build dir.

    Postcondition: `target.artifacts` lists the test executables, and the
    build dir holds no dependency metadata and no counter files.
    """
    args = cargo_test_no_run_args(target, options, ws)
    try:
        cp = hermetic.run_cargo_in(
            options.cargo,
            args,
            cwd=ws.root,
            env_ext=instrumentation.env_ext(os.environ),
            check=False,
            stdout=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as e:
        raise BuildFailure(f"Could not run cargo: {e}")

    if cp.returncode != 0:
        message = f"Building target '{target.name}' failed with exit code {cp.returncode}"
        diagnostics = compiler_diagnostics_from_cargo_messages(cp.stdout or "")
        if diagnostics:
            message += ":\n" + diagnostics
        raise BuildFailure(message, returncode=cp.returncode)

    artifacts = executables_from_cargo_messages(cp.stdout)
    if not artifacts:
        raise BuildFailure(
            f"Building target '{target.name}' produced no test executables",
        )

    removed = ws.remove_dependency_metadata()
    stale = ws.remove_counter_files()
    if stale:
        click.echo(f"Removed {len(stale)} stale counter file(s) from {ws.build_dir}", err=True)

    target.artifacts = artifacts
    click.echo(
        f"Built {target.name}: {len(artifacts)} test executable(s), "
        f"discarded {len(removed)} dependency metadata file(s)"
    )
    return target
