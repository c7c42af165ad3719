"""Layered derivation cache.

Every image build is split into two derivations:

- Stage 1 compiles the external dependencies of a target against a
  skeleton of the workspace in which every crate source is a stub. Its key
  covers the dependency set, the vendored sources of the workspace
  lockfile, the toolchain and the cargo configuration, never project-owned
  source.
- Stage 2 runs the real build on the full snapshot with a writable copy of
  the Stage-1 ``target/`` directory.

Targets with the same dependency set therefore share one Stage-1 result,
and a change to project code only invalidates Stage 2.
"""

from __future__ import annotations

import hashlib
import logging
import tomllib
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from hubris_imagegen.builds.cache_key import canonical_json
from hubris_imagegen.builds.derivation import (
    TREE_OUTPUT,
    DeclaredOutput,
    Derivation,
    DerivationInput,
)
from hubris_imagegen.errors import PlanningError, UnresolvedDependencyError
from hubris_imagegen.shims import build_shims
from hubris_imagegen.types import InputKind, Stage
from hubris_imagegen.vendor.service import VENDOR_MOUNT

if TYPE_CHECKING:
    from pathlib import Path

    from hubris_imagegen.builds.executor import BuildExecutor, ExecutionResult
    from hubris_imagegen.builds.manifest import Toolchain
    from hubris_imagegen.config import Settings
    from hubris_imagegen.shims import ShimSet
    from hubris_imagegen.source.snapshot import SourceSnapshot
    from hubris_imagegen.vendor.lockfile import LockedPackage, Lockfile
    from hubris_imagegen.vendor.service import VendorStore

logger = logging.getLogger(__name__)

# Work directory layout shared by both stages
SOURCE_MOUNT = "src"
SHIMS_MOUNT = "shims/bin"

WORKSPACE_LOCKFILE = "Cargo.lock"
CARGO_CONFIG_FILES = (".cargo/config.toml", ".cargo/config")
DEFAULT_CARGO_CONFIG = ".cargo/config.toml"

DEPS_NAME = "cargo-deps"

LIB_STUB = "#![no_std]\n"
MAIN_STUB = "fn main() {}\n"

# Manifest sections declaring additional targets by path
TARGET_SECTIONS = ("bin", "example", "test", "bench")


@dataclass(frozen=True)
class BuildTarget:
    """What an image build compiles and how.

    Attributes:
        name: Image name.
        version: Image version.
        packages: Root workspace packages of the build.
        build_steps: Stage-2 commands.
        env: Stage-2 environment variables.
        declared_outputs: Stage-2 outputs.
    """

    name: str
    version: str
    packages: tuple[str, ...]
    build_steps: tuple[tuple[str, ...], ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    declared_outputs: tuple[DeclaredOutput, ...] = ()


@dataclass(frozen=True)
class StageResult:
    """A derivation together with its execution result."""

    derivation: Derivation
    result: ExecutionResult

    @property
    def key(self) -> str:
        return self.derivation.input_hash

    @property
    def cache_hit(self) -> bool:
        return self.result.cache_hit


@dataclass(frozen=True)
class DependencySkeleton:
    """Workspace manifests and lockfiles with every crate source stubbed.

    Attributes:
        snapshot: Snapshot the manifests are copied from.
        paths: Snapshot paths copied verbatim.
        stubs: Generated stub sources (path, text).
    """

    snapshot: SourceSnapshot
    paths: tuple[str, ...]
    stubs: tuple[tuple[str, str], ...]

    def materialize(self, dest: Path) -> Path:
        """Write the skeleton into a directory."""
        self.snapshot.materialize(dest, self.paths)
        for relative, text in self.stubs:
            path = dest / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        return dest


def _unknown_crate(
    error: UnresolvedDependencyError, target: BuildTarget
) -> PlanningError:
    return PlanningError(
        f"{target.name} references unknown crate {error.dependency} ({error.reason})",
        code="unknown_crate",
    )


def workspace_lockfile(snapshot: SourceSnapshot) -> Lockfile:
    """Parse the workspace Cargo.lock at the snapshot root.

    Raises:
        PlanningError: If the snapshot has no workspace lockfile.
    """
    from hubris_imagegen.vendor.lockfile import parse_lockfile

    if not snapshot.has(WORKSPACE_LOCKFILE):
        raise PlanningError(
            "project has no Cargo.lock at its root", code="lockfile_missing"
        )
    return parse_lockfile(snapshot.read_text(WORKSPACE_LOCKFILE), WORKSPACE_LOCKFILE)


def dependency_set(
    snapshot: SourceSnapshot, target: BuildTarget
) -> list[LockedPackage]:
    """External packages transitively required by a target's root packages.

    Raises:
        PlanningError: If a root package is not in the workspace lockfile.
    """
    lockfile = workspace_lockfile(snapshot)
    try:
        return lockfile.dependency_closure(target.packages)
    except UnresolvedDependencyError as e:
        raise _unknown_crate(e, target) from e


def dependency_set_digest(packages: list[LockedPackage]) -> str:
    """Digest of a dependency set; the Stage-1 skeleton identity."""
    payload = [[p.name, p.version, p.source or "", p.checksum or ""] for p in packages]
    return hashlib.sha256(canonical_json(payload).encode()).hexdigest()


def _declared_paths(manifest: dict[str, Any]) -> list[tuple[str, str]]:
    """Target source paths a manifest declares explicitly, with stub text."""
    declared: list[tuple[str, str]] = []
    lib = manifest.get("lib")
    if isinstance(lib, dict) and isinstance(lib.get("path"), str):
        declared.append((lib["path"], LIB_STUB))
    for section in TARGET_SECTIONS:
        for entry in manifest.get(section, []) or []:
            if isinstance(entry, dict) and isinstance(entry.get("path"), str):
                declared.append((entry["path"], MAIN_STUB))
    package = manifest.get("package", {})
    if isinstance(package, dict) and isinstance(package.get("build"), str):
        declared.append((package["build"], MAIN_STUB))
    return declared


def build_skeleton(snapshot: SourceSnapshot) -> DependencySkeleton:
    """Build the dependency skeleton of a workspace.

    Every Cargo.toml and Cargo.lock, the toolchain file and the cargo
    configuration are kept. Each crate's library, binaries and build script
    are replaced with stubs so that cargo can load the workspace.

    Raises:
        PlanningError: If a Cargo.toml cannot be parsed.
    """
    keep = {
        p
        for p in snapshot.paths
        if PurePosixPath(p).name in ("Cargo.toml", "Cargo.lock")
    }
    keep.update(
        p
        for p in ("rust-toolchain.toml", "rust-toolchain", *CARGO_CONFIG_FILES)
        if snapshot.has(p)
    )

    stubs: dict[str, str] = {}
    for manifest_path in sorted(snapshot.files_named("Cargo.toml")):
        try:
            manifest = tomllib.loads(snapshot.read_text(manifest_path))
        except tomllib.TOMLDecodeError as e:
            raise PlanningError(
                f"cannot parse {manifest_path}: {e}", code="manifest_invalid"
            ) from e
        if "package" not in manifest:
            continue

        crate_dir = PurePosixPath(manifest_path).parent
        candidates = [
            ("src/lib.rs", LIB_STUB),
            ("src/main.rs", MAIN_STUB),
            ("build.rs", MAIN_STUB),
        ]
        for relative, text in candidates:
            path = (crate_dir / relative).as_posix()
            if snapshot.has(path):
                stubs[path] = text
        for path in snapshot.paths:
            pure = PurePosixPath(path)
            if pure.parent == crate_dir / "src" / "bin" and pure.suffix == ".rs":
                stubs[path] = MAIN_STUB
        for relative, text in _declared_paths(manifest):
            stubs[(crate_dir / relative).as_posix()] = text

    return DependencySkeleton(
        snapshot=snapshot,
        paths=tuple(sorted(keep)),
        stubs=tuple(sorted(stubs.items())),
    )


def project_cargo_config(snapshot: SourceSnapshot) -> tuple[str, str]:
    """Return (path, text) of the project's own cargo configuration."""
    for path in CARGO_CONFIG_FILES:
        if snapshot.has(path):
            return path, snapshot.read_text(path)
    return DEFAULT_CARGO_CONFIG, ""


def merged_cargo_config(
    snapshot: SourceSnapshot, vendor_store: VendorStore
) -> tuple[str, str]:
    """Project cargo configuration with vendor source replacement appended.

    The project's text is kept verbatim in front so that both sets of
    sources stay resolvable.
    """
    path, text = project_cargo_config(snapshot)
    vendor_text = vendor_store.cargo_config(VENDOR_MOUNT)
    if text and not text.endswith("\n"):
        text += "\n"
    merged = f"{text}\n{vendor_text}" if text else vendor_text
    return path, merged


def _toolchain_input(toolchain: Toolchain) -> DerivationInput:
    return DerivationInput(
        kind=InputKind.TOOLCHAIN,
        mount="",
        identity=toolchain.identity,
        ref=toolchain.dir,
    )


def deps_only_derivation(
    snapshot: SourceSnapshot,
    target: BuildTarget,
    vendor_store: VendorStore,
    toolchain: Toolchain,
    settings: Settings,
) -> Derivation:
    """Describe Stage 1 for a target.

    Raises:
        PlanningError: If the target references crates missing from the
            workspace lockfile.
        UnresolvedDependencyError: If a dependency is not vendored.
    """
    dependencies = dependency_set(snapshot, target)
    digest = dependency_set_digest(dependencies)
    # cargo loads every skeleton member, so it needs every locked package
    workspace_vendor = vendor_store.subset(
        workspace_lockfile(snapshot).external_packages
    )
    config_path, config_text = merged_cargo_config(snapshot, workspace_vendor)

    steps: tuple[tuple[str, ...], ...] = ()
    if dependencies:
        args: list[str] = ["cargo", *settings.deps_build_args]
        for package in dependencies:
            args.extend(["-p", f"{package.name}@{package.version}"])
        steps = (tuple(args),)

    return Derivation(
        name=DEPS_NAME,
        version=digest[:12],
        stage=Stage.DEPS,
        inputs=(
            DerivationInput(
                kind=InputKind.SKELETON,
                mount=SOURCE_MOUNT,
                identity=digest,
                ref=build_skeleton(snapshot),
            ),
            DerivationInput(
                kind=InputKind.VENDOR,
                mount=f"{SOURCE_MOUNT}/{VENDOR_MOUNT}",
                identity=workspace_vendor.digest,
                ref=workspace_vendor,
            ),
            _toolchain_input(toolchain),
        ),
        build_steps=steps,
        files=((config_path, config_text),),
        declared_outputs=(DeclaredOutput(kind=TREE_OUTPUT, root="target"),),
        workdir=SOURCE_MOUNT,
    )


def full_derivation(
    snapshot: SourceSnapshot,
    stage1: Derivation,
    target: BuildTarget,
    vendor_store: VendorStore,
    shims: ShimSet,
    toolchain: Toolchain,
) -> Derivation:
    """Describe Stage 2 for a target on top of a Stage-1 derivation."""
    config_path, config_text = merged_cargo_config(snapshot, vendor_store)
    return Derivation(
        name=target.name,
        version=target.version,
        stage=Stage.FULL,
        inputs=(
            DerivationInput(
                kind=InputKind.SOURCE,
                mount=SOURCE_MOUNT,
                identity=snapshot.digest,
                ref=snapshot,
            ),
            DerivationInput.from_derivation(stage1, SOURCE_MOUNT),
            DerivationInput(
                kind=InputKind.VENDOR,
                mount=f"{SOURCE_MOUNT}/{VENDOR_MOUNT}",
                identity=vendor_store.digest,
                ref=vendor_store,
            ),
            DerivationInput(
                kind=InputKind.SHIMS,
                mount=SHIMS_MOUNT,
                identity=shims.digest,
                ref=shims,
            ),
            _toolchain_input(toolchain),
        ),
        build_steps=target.build_steps,
        env=target.env,
        files=((config_path, config_text),),
        declared_outputs=target.declared_outputs,
        workdir=SOURCE_MOUNT,
    )


class LayeredCache:
    """Two-layer build cache on top of an executor.

    Args:
        executor: Executor consulting the store.
        vendor_store: Vendored dependencies of the project.
        toolchain: Pinned toolchain.
        settings: Application settings.
        shims: Shim table for Stage 2 (built from the toolchain if omitted).
    """

    def __init__(
        self,
        executor: BuildExecutor,
        vendor_store: VendorStore,
        toolchain: Toolchain,
        settings: Settings,
        shims: ShimSet | None = None,
    ) -> None:
        self.executor = executor
        self.vendor_store = vendor_store
        self.toolchain = toolchain
        self.settings = settings
        if shims is None:
            shims = build_shims(toolchain.dir, settings)
        self.shims = shims

    def deps_only_derivation(
        self, snapshot: SourceSnapshot, target: BuildTarget
    ) -> Derivation:
        """Describe Stage 1 for a target."""
        return deps_only_derivation(
            snapshot, target, self.vendor_store, self.toolchain, self.settings
        )

    def full_derivation(
        self,
        snapshot: SourceSnapshot,
        stage1: StageResult | Derivation | None,
        target: BuildTarget,
    ) -> Derivation:
        """Describe Stage 2 for a target.

        Raises:
            PlanningError: If stage1 was computed for a different
                dependency set.
        """
        expected = self.deps_only_derivation(snapshot, target)
        if stage1 is not None:
            supplied = stage1.derivation if isinstance(stage1, StageResult) else stage1
            if supplied.input_hash != expected.input_hash:
                raise PlanningError(
                    f"Stage-1 result {supplied.input_hash[:23]} does not match the "
                    f"dependency set of {target.name} ({expected.input_hash[:23]})",
                    code="stage_mismatch",
                )
        return full_derivation(
            snapshot, expected, target, self.vendor_store, self.shims, self.toolchain
        )

    def build_deps_only(
        self, snapshot: SourceSnapshot, target: BuildTarget
    ) -> StageResult:
        """Build (or reuse) Stage 1 for a target."""
        derivation = self.deps_only_derivation(snapshot, target)
        return StageResult(derivation, self.executor.execute(derivation))

    def build_full(
        self,
        snapshot: SourceSnapshot,
        stage1: StageResult | None,
        target: BuildTarget,
    ) -> StageResult:
        """Build (or reuse) Stage 2, computing Stage 1 first when omitted.

        Raises:
            PlanningError: If stage1 does not match the target.
            ExecutionError: If either stage fails.
        """
        if stage1 is None:
            stage1 = self.build_deps_only(snapshot, target)
        derivation = self.full_derivation(snapshot, stage1, target)
        return StageResult(derivation, self.executor.execute(derivation))


__all__ = [
    "BuildTarget",
    "DependencySkeleton",
    "LayeredCache",
    "StageResult",
    "build_skeleton",
    "dependency_set",
    "dependency_set_digest",
    "deps_only_derivation",
    "full_derivation",
    "merged_cargo_config",
    "workspace_lockfile",
]
