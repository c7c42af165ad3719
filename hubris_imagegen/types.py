"""Shared type definitions for hubris_imagegen.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Status of an image build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BatchMode(str, Enum):
    """How a batch reacts to a failed image."""

    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


class Stage(str, Enum):
    """Cache layer a derivation belongs to."""

    DEPS = "deps"
    FULL = "full"


class InputKind(str, Enum):
    """Kind of input a derivation declares."""

    SOURCE = "source"
    SKELETON = "skeleton"
    VENDOR = "vendor"
    SHIMS = "shims"
    TOOLCHAIN = "toolchain"
    DERIVATION = "derivation"


class ArtifactKind(str, Enum):
    """Classes of image artifacts a build can produce."""

    ARCHIVE = "archive"
    ELF = "elf"
    BIN = "bin"


class SourceKind(str, Enum):
    """Where a locked package comes from."""

    PATH = "path"
    REGISTRY = "registry"
    GIT = "git"


@dataclass
class ArtifactInfo:
    """Information about a produced image artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None


__all__ = [
    "ArtifactInfo",
    "ArtifactKind",
    "BatchMode",
    "BuildStatus",
    "InputKind",
    "SourceKind",
    "Stage",
]
