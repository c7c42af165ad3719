"""Image derivation planning.

This module turns a manifest path into the derivations that build one
firmware image:
- prepare_plan(): identity, manifest, target and both stage derivations
- plan_image(): the Stage-2 derivation only (Stage 1 is its child)

Planning is pure: it reads the snapshot and the vendor store, and never
runs anything or touches the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from hubris_imagegen.builds.derivation import DeclaredOutput, Derivation
from hubris_imagegen.builds.identity import (
    IdentityOverrides,
    ManifestIdentity,
    normalize_manifest_path,
    parse_manifest_identity,
)
from hubris_imagegen.builds.layered import (
    BuildTarget,
    deps_only_derivation,
    full_derivation,
)
from hubris_imagegen.builds.manifest import (
    AppManifest,
    Toolchain,
    load_app_manifest,
    resolve_toolchain,
)
from hubris_imagegen.errors import PlanningError
from hubris_imagegen.shims import build_shims
from hubris_imagegen.types import ArtifactKind

if TYPE_CHECKING:
    from hubris_imagegen.config import Settings
    from hubris_imagegen.source.snapshot import SourceSnapshot
    from hubris_imagegen.vendor.service import VendorStore

logger = logging.getLogger(__name__)

# Image outputs are collected from target/**/dist/**
DIST_COMPONENT = "dist"

IMAGE_OUTPUTS = (
    DeclaredOutput(
        kind=ArtifactKind.ARCHIVE.value,
        pattern="*.zip",
        path_contains=DIST_COMPONENT,
    ),
    DeclaredOutput(
        kind=ArtifactKind.ELF.value,
        pattern="final.elf",
        path_contains=DIST_COMPONENT,
    ),
    DeclaredOutput(
        kind=ArtifactKind.BIN.value,
        pattern="final.bin",
        path_contains=DIST_COMPONENT,
    ),
)


@dataclass(frozen=True)
class ImagePlan:
    """Everything planned for one image.

    Attributes:
        manifest_path: Normalised manifest path.
        identity: Image identity.
        manifest: Loaded application manifest.
        toolchain: Pinned toolchain.
        target: Build target handed to the layered cache.
        stage1: Dependency-only derivation.
        derivation: Full image derivation (consumes stage1).
    """

    manifest_path: str
    identity: ManifestIdentity
    manifest: AppManifest
    toolchain: Toolchain
    target: BuildTarget
    stage1: Derivation
    derivation: Derivation

    def describe(self) -> dict[str, Any]:
        """Summary suitable for JSON output."""
        return {
            "manifest_path": self.manifest_path,
            "name": self.identity.name,
            "version": self.identity.version,
            "board": self.manifest.board,
            "target": self.manifest.target,
            "packages": list(self.target.packages),
            "stage1_key": self.stage1.input_hash,
            "stage2_key": self.derivation.input_hash,
            "build_steps": [list(s) for s in self.derivation.build_steps],
            "env": dict(self.derivation.env),
            "inputs": [i.describe() for i in self.derivation.inputs],
            "declared_outputs": [
                {"kind": o.kind, "pattern": o.pattern} for o in IMAGE_OUTPUTS
            ],
        }


def image_target(
    identity: ManifestIdentity,
    manifest_path: str,
    manifest: AppManifest,
    settings: Settings,
) -> BuildTarget:
    """Compose the build target of an image.

    Args:
        identity: Image identity.
        manifest_path: Normalised manifest path.
        manifest: Loaded application manifest.
        settings: Application settings (provenance variable).

    Returns:
        BuildTarget running ``cargo xtask dist <manifest>``.
    """
    return BuildTarget(
        name=identity.name,
        version=identity.version,
        packages=tuple(manifest.root_packages),
        build_steps=(("cargo", "xtask", "dist", manifest_path),),
        env=(
            (
                settings.version_env_var,
                f"{settings.version_env_prefix}{identity.version}",
            ),
        ),
        declared_outputs=IMAGE_OUTPUTS,
    )


def prepare_plan(
    manifest_path: str,
    snapshot: SourceSnapshot,
    vendor_store: VendorStore,
    settings: Settings,
    overrides: IdentityOverrides | None = None,
) -> ImagePlan:
    """Plan an image build.

    Args:
        manifest_path: Manifest path relative to the project root.
        snapshot: Filtered source snapshot.
        vendor_store: Vendored dependencies.
        settings: Application settings.
        overrides: Optional identity overrides.

    Returns:
        ImagePlan.

    Raises:
        PlanningError: If the path, manifest, crates or toolchain
            configuration are invalid.
        UnresolvedDependencyError: If a required dependency is not vendored.
    """
    identity = parse_manifest_identity(
        manifest_path,
        manifest_root=settings.manifest_root,
        default_version=settings.default_version,
        overrides=overrides,
    )
    normalized = normalize_manifest_path(manifest_path, settings.manifest_root)

    try:
        manifest = load_app_manifest(snapshot, normalized)
        toolchain = resolve_toolchain(snapshot, settings.toolchain_dir)
        target = image_target(identity, normalized, manifest, settings)
        stage1 = deps_only_derivation(
            snapshot, target, vendor_store, toolchain, settings
        )
    except PlanningError as e:
        if e.manifest_path is not None:
            raise
        raise PlanningError(str(e), manifest_path=normalized, code=e.code) from e

    shims = build_shims(toolchain.dir, settings)
    derivation = full_derivation(
        snapshot, stage1, target, vendor_store, shims, toolchain
    )

    logger.info(
        "Planned %s from %s (stage1=%s, stage2=%s)",
        identity,
        normalized,
        stage1.input_hash[:23],
        derivation.input_hash[:23],
    )
    return ImagePlan(
        manifest_path=normalized,
        identity=identity,
        manifest=manifest,
        toolchain=toolchain,
        target=target,
        stage1=stage1,
        derivation=derivation,
    )


def plan_image(
    manifest_path: str,
    snapshot: SourceSnapshot,
    vendor_store: VendorStore,
    settings: Settings,
    overrides: IdentityOverrides | None = None,
) -> Derivation:
    """Plan an image build and return its full derivation.

    See prepare_plan() for arguments and errors.
    """
    return prepare_plan(
        manifest_path, snapshot, vendor_store, settings, overrides
    ).derivation


__all__ = [
    "IMAGE_OUTPUTS",
    "ImagePlan",
    "image_target",
    "plan_image",
    "prepare_plan",
]
