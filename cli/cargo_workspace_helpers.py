import tomllib
from pathlib import Path


def find_workspace_root(start: Path) -> Path:
    """Walks up from `start` to the outermost directory with a Cargo.toml
    that declares a `[workspace]`, or the nearest Cargo.toml otherwise."""
    start = start.resolve()
    nearest: Path | None = None
    for candidate in [start, *start.parents]:
        cargo_toml_path = candidate / "Cargo.toml"
        if not cargo_toml_path.is_file():
            continue
        if nearest is None:
            nearest = candidate
        with cargo_toml_path.open("rb") as f:
            if "workspace" in tomllib.load(f):
                return candidate
    if nearest is None:
        raise FileNotFoundError(f"No Cargo.toml found in {start} or its parents")
    return nearest


def package_dirs_for_cargo_workspace(workspace_root: Path) -> list[Path]:
    cargo_toml_path = workspace_root / "Cargo.toml"
    with cargo_toml_path.open("rb") as f:
        ct = tomllib.load(f)

    if "workspace" not in ct:
        if "package" not in ct:
            return []
        return [workspace_root]

    member_names = ct["workspace"].get("members", [])
    package_dirs = []
    if "package" in ct:
        package_dirs.append(workspace_root)
    for member in member_names:
        # Members may be globs, e.g. "crates/*".
        for member_dir in sorted(workspace_root.glob(member)):
            if (member_dir / "Cargo.toml").is_file():
                package_dirs.append(member_dir)
    return package_dirs


def owned_source_roots(workspace_root: Path) -> list[Path]:
    """The resolved `src` directories of every package in the workspace.

    Dependencies live in Cargo's registry cache and never under these roots,
    and neither do integration-test harness sources under `tests/`.
    """
    roots = []
    for pkg_dir in package_dirs_for_cargo_workspace(workspace_root):
        src = pkg_dir / "src"
        if src.is_dir():
            roots.append(src.resolve())
    return roots
