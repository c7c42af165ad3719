"""Image identity derived from manifest paths.

``app/demo-stm32f4-discovery/app.toml`` names the image
``demo-stm32f4-discovery``; ``app/demo-stm32h7-nucleo/app-h743.toml`` names
``demo-stm32h7-nucleo-app-h743``. Paths that do not follow the convention
are rejected instead of producing a surprising name.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from hubris_imagegen.errors import PlanningError

# Allowed characters in a name segment or version
SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_.+-]+$")

DEFAULT_VERSION = "0.1.0"


@dataclass(frozen=True)
class ManifestIdentity:
    """Canonical (name, version) of an image."""

    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass(frozen=True)
class IdentityOverrides:
    """Caller-supplied replacements for the derived identity."""

    name: str | None = None
    version: str | None = None


def _check_token(value: str, what: str, manifest_path: str) -> str:
    if not SEGMENT_PATTERN.match(value) or value in (".", ".."):
        raise PlanningError(
            f"invalid {what} {value!r}: allowed characters are "
            "letters, digits, '_', '.', '+' and '-'",
            manifest_path=manifest_path,
            code="invalid_identity",
        )
    return value


def normalize_manifest_path(manifest_path: str, manifest_root: str = "app") -> str:
    """Validate a manifest path and return its normalised POSIX form.

    Raises:
        PlanningError: If the path breaks the manifest path convention.
    """
    if not manifest_path or "\\" in manifest_path:
        raise PlanningError(
            "manifest path must be a non-empty POSIX path",
            manifest_path=manifest_path or "<empty>",
            code="invalid_manifest_path",
        )

    path = PurePosixPath(manifest_path)
    if path.is_absolute():
        raise PlanningError(
            "manifest path must be relative to the project root",
            manifest_path=manifest_path,
            code="invalid_manifest_path",
        )
    if ".." in path.parts:
        raise PlanningError(
            "manifest path must not contain '..'",
            manifest_path=manifest_path,
            code="invalid_manifest_path",
        )
    if len(path.parts) < 2 or path.parts[0] != manifest_root:
        raise PlanningError(
            f"manifest must live under {manifest_root}/",
            manifest_path=manifest_path,
            code="invalid_manifest_path",
        )
    if path.suffix != ".toml":
        raise PlanningError(
            "manifest must be a .toml file",
            manifest_path=manifest_path,
            code="invalid_manifest_path",
        )
    return path.as_posix()


def parse_manifest_identity(
    manifest_path: str,
    manifest_root: str = "app",
    default_version: str = DEFAULT_VERSION,
    overrides: IdentityOverrides | None = None,
) -> ManifestIdentity:
    """Derive an image identity from a manifest path.

    The manifest root prefix is removed, then a trailing ``/app.toml`` or
    ``.toml``, and the remaining ``/`` separators become ``-``.

    Args:
        manifest_path: Manifest path relative to the project root.
        manifest_root: Directory holding manifests.
        default_version: Version used when no override is given.
        overrides: Optional explicit name and/or version.

    Returns:
        ManifestIdentity.

    Raises:
        PlanningError: If the path or an override is invalid.
    """
    normalized = normalize_manifest_path(manifest_path, manifest_root)

    rest = normalized.removeprefix(f"{manifest_root}/")
    if rest.endswith("/app.toml"):
        rest = rest.removesuffix("/app.toml")
    else:
        rest = rest.removesuffix(".toml")

    segments = rest.split("/")
    for segment in segments:
        _check_token(segment, "name segment", manifest_path)
    name = "-".join(segments)
    version = default_version

    if overrides is not None:
        if overrides.name is not None:
            name = _check_token(overrides.name, "name", manifest_path)
        if overrides.version is not None:
            version = overrides.version
    _check_token(version, "version", manifest_path)

    return ManifestIdentity(name=name, version=version)


__all__ = [
    "DEFAULT_VERSION",
    "IdentityOverrides",
    "ManifestIdentity",
    "normalize_manifest_path",
    "parse_manifest_identity",
]
