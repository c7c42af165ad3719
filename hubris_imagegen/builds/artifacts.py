"""Image artifact discovery, publishing and manifest generation.

This module handles:
- Classifying image outputs (archive, elf, bin)
- Computing checksums
- Publishing copies under <artifacts_dir>/<name>/<version>/
- Generating build manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from hubris_imagegen.types import ArtifactInfo, ArtifactKind

if TYPE_CHECKING:
    from hubris_imagegen.builds.identity import ManifestIdentity

logger = logging.getLogger(__name__)

ELF_NAME = "final.elf"
BIN_NAME = "final.bin"
ARCHIVE_SUFFIX = ".zip"

MANIFEST_NAME = "manifest.json"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def classify_artifact(filename: str) -> str | None:
    """Classify an image output by its filename.

    Args:
        filename: The artifact filename.

    Returns:
        Artifact kind (archive, elf, bin), or None for anything else.
    """
    if filename == ELF_NAME:
        return ArtifactKind.ELF.value
    if filename == BIN_NAME:
        return ArtifactKind.BIN.value
    if filename.lower().endswith(ARCHIVE_SUFFIX):
        return ArtifactKind.ARCHIVE.value
    return None


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def discover_artifacts(
    out_dir: Path,
    artifacts_root: Path | None = None,
) -> list[ArtifactInfo]:
    """Discover image artifacts in a derivation output directory.

    Only top-level files are considered; image outputs are collected flat.

    Args:
        out_dir: Committed output directory of an image derivation.
        artifacts_root: Root directory for computing relative paths.
                        If None, uses out_dir.

    Returns:
        List of ArtifactInfo, sorted by filename.
    """
    if not out_dir.exists():
        logger.warning("Output directory does not exist: %s", out_dir)
        return []

    if artifacts_root is None:
        artifacts_root = out_dir

    artifacts: list[ArtifactInfo] = []
    for path in sorted(out_dir.iterdir()):
        if not path.is_file():
            continue
        kind = classify_artifact(path.name)
        if kind is None:
            logger.debug("Skipping unclassified output: %s", path.name)
            continue

        try:
            relative_path = path.relative_to(artifacts_root).as_posix()
        except ValueError:
            relative_path = path.name

        size_bytes = path.stat().st_size
        artifact = ArtifactInfo(
            filename=path.name,
            relative_path=relative_path,
            size_bytes=size_bytes,
            sha256=compute_file_hash(path),
            kind=kind,
        )
        artifacts.append(artifact)
        logger.debug(
            "Discovered artifact: %s (kind=%s, size=%d)", path.name, kind, size_bytes
        )

    logger.info("Discovered %d artifacts in %s", len(artifacts), out_dir)
    return artifacts


def publish_dir(artifacts_dir: Path, identity: ManifestIdentity) -> Path:
    """Directory receiving published copies for an identity."""
    return artifacts_dir / identity.name / identity.version


def publish_artifacts(
    out_dir: Path,
    artifacts: list[ArtifactInfo],
    dest_dir: Path,
) -> dict[str, Path]:
    """Copy artifacts out of the store into a publish directory.

    Store entries are never handed out for writing; published copies are
    plain files. An existing publish directory is replaced, so it only
    ever holds the latest build of an identity.

    Args:
        out_dir: Committed output directory.
        artifacts: Artifacts discovered in out_dir.
        dest_dir: Publish directory.

    Returns:
        Mapping of filename to published path.
    """
    if dest_dir.is_dir():
        shutil.rmtree(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    published: dict[str, Path] = {}
    for artifact in artifacts:
        dest = dest_dir / artifact.filename
        shutil.copyfile(out_dir / artifact.filename, dest)
        dest.chmod(0o644)
        published[artifact.filename] = dest
    logger.info("Published %d artifacts to %s", len(published), dest_dir)
    return published


def generate_manifest(
    artifacts: list[ArtifactInfo],
    identity: ManifestIdentity,
    build_id: int | None = None,
    stage1_key: str | None = None,
    stage2_key: str | None = None,
    manifest_path: str | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifacts: Discovered artifacts.
        identity: Image identity.
        build_id: Optional database build ID.
        stage1_key: Optional dependency layer key.
        stage2_key: Optional image derivation key.
        manifest_path: Optional app manifest path.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "name": identity.name,
        "image_version": identity.version,
        "artifacts": [asdict(a) for a in artifacts],
    }

    if build_id is not None:
        manifest["build_id"] = build_id
    if stage1_key:
        manifest["stage1_key"] = stage1_key
    if stage2_key:
        manifest["stage2_key"] = stage2_key
    if manifest_path:
        manifest["manifest_path"] = manifest_path
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts if a.kind}),
    }
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_NAME",
    "classify_artifact",
    "compute_file_hash",
    "discover_artifacts",
    "generate_manifest",
    "publish_artifacts",
    "publish_dir",
    "write_manifest",
]
