"""Application manifest and toolchain file loading.

This module handles:
- Reading app.toml manifests from a snapshot, with ``inherit`` merging
- Determining the root packages an image build compiles
- Reading the pinned toolchain description (rust-toolchain[.toml])
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from hubris_imagegen.builds.cache_key import compute_toolchain_identity
from hubris_imagegen.errors import PlanningError, SnapshotError

if TYPE_CHECKING:
    from hubris_imagegen.source.snapshot import SourceSnapshot

logger = logging.getLogger(__name__)

# The build tool crate is always compiled
XTASK_PACKAGE = "xtask"

TOOLCHAIN_FILES = ("rust-toolchain.toml", "rust-toolchain")


@dataclass(frozen=True)
class AppManifest:
    """A loaded application manifest.

    Attributes:
        path: Manifest path in the snapshot.
        name: Application name declared in the manifest.
        board: Board name, if declared.
        target: Compilation target triple, if declared.
        kernel: Kernel crate name.
        tasks: Task name to crate name.
        sources: Manifest files read, in inheritance order.
    """

    path: str
    name: str
    board: str | None
    target: str | None
    kernel: str
    tasks: dict[str, str] = field(default_factory=dict)
    sources: tuple[str, ...] = ()

    @property
    def root_packages(self) -> list[str]:
        """Packages the image build compiles: xtask, kernel, then tasks."""
        packages = [XTASK_PACKAGE, self.kernel]
        for crate in sorted(set(self.tasks.values())):
            if crate not in packages:
                packages.append(crate)
        return packages


@dataclass(frozen=True)
class ToolchainSpec:
    """Pinned toolchain description from the project."""

    path: str | None
    channel: str | None
    components: tuple[str, ...] = ()
    targets: tuple[str, ...] = ()
    profile: str | None = None

    def describe(self) -> dict[str, Any]:
        return {
            "file": self.path,
            "channel": self.channel,
            "components": sorted(self.components),
            "targets": sorted(self.targets),
            "profile": self.profile,
        }


@dataclass(frozen=True)
class Toolchain:
    """A pinned toolchain directory together with the project's description."""

    dir: Path
    spec: ToolchainSpec

    @property
    def bin_dir(self) -> Path:
        return self.dir / "bin"

    @property
    def identity(self) -> str:
        """Digest identifying the toolchain in derivation keys."""
        return compute_toolchain_identity(self.dir, self.spec.describe())


def merge_tables(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge two TOML tables; values in override win."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_tables(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_toml(
    snapshot: SourceSnapshot, path: str, manifest_path: str
) -> dict[str, Any]:
    if not snapshot.has(path):
        raise PlanningError(
            f"manifest file {path} is not part of the source snapshot",
            manifest_path=manifest_path,
            code="manifest_missing",
        )
    try:
        return tomllib.loads(snapshot.read_text(path))
    except UnicodeDecodeError as e:
        raise PlanningError(
            f"{path} is not valid UTF-8",
            manifest_path=manifest_path,
            code="manifest_invalid",
        ) from e
    except tomllib.TOMLDecodeError as e:
        raise PlanningError(
            f"cannot parse {path}: {e}",
            manifest_path=manifest_path,
            code="manifest_invalid",
        ) from e


def _load_with_inherit(
    snapshot: SourceSnapshot, path: str, manifest_path: str
) -> tuple[dict[str, Any], list[str]]:
    chain: list[str] = []
    layers: list[dict[str, Any]] = []
    current: str | None = path

    while current is not None:
        if current in chain:
            raise PlanningError(
                f"inherit cycle: {' -> '.join([*chain, current])}",
                manifest_path=manifest_path,
                code="manifest_invalid",
            )
        chain.append(current)
        data = _read_toml(snapshot, current, manifest_path)
        parent = data.pop("inherit", None)
        layers.append(data)
        if parent is None:
            current = None
        elif isinstance(parent, str):
            current = (PurePosixPath(current).parent / parent).as_posix()
        else:
            raise PlanningError(
                f"'inherit' in {current} must be a string",
                manifest_path=manifest_path,
                code="manifest_invalid",
            )

    merged: dict[str, Any] = {}
    for layer in reversed(layers):
        merged = merge_tables(merged, layer)
    return merged, list(reversed(chain))


def load_app_manifest(snapshot: SourceSnapshot, manifest_path: str) -> AppManifest:
    """Load an application manifest from a snapshot.

    Args:
        snapshot: Filtered source snapshot.
        manifest_path: Normalised manifest path.

    Returns:
        AppManifest with inherited tables merged.

    Raises:
        PlanningError: If the manifest is missing, unparsable or lacks a
            kernel crate.
    """
    data, sources = _load_with_inherit(snapshot, manifest_path, manifest_path)

    kernel = data.get("kernel")
    if not isinstance(kernel, dict) or not isinstance(kernel.get("name"), str):
        raise PlanningError(
            "manifest has no [kernel] name",
            manifest_path=manifest_path,
            code="manifest_invalid",
        )

    tasks: dict[str, str] = {}
    raw_tasks = data.get("tasks", {})
    if not isinstance(raw_tasks, dict):
        raise PlanningError(
            "[tasks] must be a table",
            manifest_path=manifest_path,
            code="manifest_invalid",
        )
    for task_name, task in sorted(raw_tasks.items()):
        if not isinstance(task, dict) or not isinstance(task.get("name"), str):
            raise PlanningError(
                f"task {task_name} has no crate name",
                manifest_path=manifest_path,
                code="manifest_invalid",
            )
        tasks[task_name] = task["name"]

    manifest = AppManifest(
        path=manifest_path,
        name=str(data.get("name", "")),
        board=data.get("board"),
        target=data.get("target"),
        kernel=kernel["name"],
        tasks=tasks,
        sources=tuple(sources),
    )
    logger.debug(
        "Loaded %s: kernel=%s, %d tasks", manifest_path, manifest.kernel, len(tasks)
    )
    return manifest


def load_toolchain_spec(snapshot: SourceSnapshot) -> ToolchainSpec:
    """Read the pinned toolchain description at the snapshot root.

    A missing file yields an empty spec; the toolchain directory still
    identifies the toolchain.

    Raises:
        PlanningError: If the toolchain file cannot be parsed.
    """
    for path in TOOLCHAIN_FILES:
        if not snapshot.has(path):
            continue
        try:
            text = snapshot.read_text(path)
        except (SnapshotError, UnicodeDecodeError) as e:
            raise PlanningError(
                f"cannot read {path}: {e}", code="toolchain_invalid"
            ) from e

        if path == "rust-toolchain" and not text.lstrip().startswith("["):
            return ToolchainSpec(path=path, channel=text.strip() or None)

        try:
            data = tomllib.loads(text).get("toolchain", {})
        except tomllib.TOMLDecodeError as e:
            raise PlanningError(
                f"cannot parse {path}: {e}", code="toolchain_invalid"
            ) from e
        return ToolchainSpec(
            path=path,
            channel=data.get("channel"),
            components=tuple(data.get("components", ())),
            targets=tuple(data.get("targets", ())),
            profile=data.get("profile"),
        )

    return ToolchainSpec(path=None, channel=None)


def resolve_toolchain(
    snapshot: SourceSnapshot, toolchain_dir: Path | None
) -> Toolchain:
    """Bind the configured toolchain directory to the project's description.

    Raises:
        PlanningError: If no toolchain directory is configured.
    """
    if toolchain_dir is None:
        raise PlanningError(
            "no toolchain directory configured (set HUBRIS_IMG_TOOLCHAIN_DIR)",
            code="toolchain_missing",
        )
    return Toolchain(dir=Path(toolchain_dir), spec=load_toolchain_spec(snapshot))


__all__ = [
    "XTASK_PACKAGE",
    "AppManifest",
    "Toolchain",
    "ToolchainSpec",
    "load_app_manifest",
    "load_toolchain_spec",
    "merge_tables",
    "resolve_toolchain",
]
