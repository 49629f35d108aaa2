import subprocess
import shlex
import os
from pathlib import Path
from typing import Mapping, Sequence, TypeAlias

import click


def mk_env_for(
    env_ext: Mapping[str, str] | None = None, base_env: Mapping[str, str] | None = None
) -> dict[str, str]:
    env = dict(base_env) if base_env is not None else os.environ.copy()

    if env_ext is not None:
        env = {**env, **env_ext}

    return env


RunSpec: TypeAlias = str | Sequence[str | os.PathLike[str]]


def shellize(cmd: RunSpec) -> str:
    if isinstance(cmd, str):
        return cmd
    else:
        return " ".join(shlex.quote(str(x)) for x in cmd)


def showing_cmds() -> bool:
    return os.environ.get("COVPIPE_SHOW_CMDS", "0") != "0"


def common_helper_for_run(cmd: RunSpec, cmd_cwd: Path | str | None = None):
    def print_cmd_only():
        click.echo(f": {shellize(cmd)}")

    def print_cmd_within(cdpath: Path):
        click.echo(f": ( cd {cdpath.as_posix()} ; {shellize(cmd)} )")

    if not showing_cmds():
        return

    if os.environ.get("PWD") is None or cmd_cwd is None:
        print_cmd_only()
        return

    invoked_from = Path(os.environ["PWD"]).resolve()
    cmd_cwd = Path(cmd_cwd).resolve()
    if cmd_cwd == invoked_from:
        print_cmd_only()
    else:
        try:
            cdpath = cmd_cwd.relative_to(invoked_from)
            print_cmd_within(cdpath)
        except ValueError:
            print_cmd_within(cmd_cwd)


def run(
    cmd: RunSpec, check=False, env_ext: Mapping[str, str] | None = None, **kwargs
) -> subprocess.CompletedProcess:
    common_helper_for_run(cmd, kwargs.get("cwd", None))

    base_env = kwargs.pop("env", None)
    return subprocess.run(
        cmd,
        check=check,
        env=mk_env_for(env_ext, base_env),
        **kwargs,
    )


def running_in_ci() -> bool:
    return os.environ.get("CI") in ("true", "1")


def cargo_toolchain_arg(args: Sequence[str]) -> list[str]:
    if args and args[0].startswith("+"):
        # If the first argument is a toolchain specifier, we don't need
        # to add our own.
        return []

    # Instrumenting with -Zprofile needs a nightly compiler. Which one is up
    # to the caller; without a spec we defer to rustup's usual resolution.
    spec = os.environ.get("COVPIPE_CARGO_TOOLCHAIN_SPEC", "")
    return [spec] if spec else []


def run_cargo_in(
    cargo: Sequence[str],
    args: Sequence[str],
    cwd: Path,
    env_ext: Mapping[str, str] | None = None,
    check=False,
    **kwargs,
) -> subprocess.CompletedProcess:
    return run(
        [*cargo, *cargo_toolchain_arg(args), *args],
        cwd=cwd,
        check=check,
        env_ext=env_ext,
        **kwargs,
    )
