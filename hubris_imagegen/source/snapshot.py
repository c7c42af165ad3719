"""Filtered, content-addressed source snapshots.

This module handles:
- Walking a project tree while pruning excluded names with their subtrees
- Computing a deterministic digest over the filtered tree
- Reading and materialising snapshot content with hash re-verification

A snapshot records content hashes, not content. Every read checks the file
against the recorded hash so that a tree edited after filtering is detected
instead of silently leaking into a build.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from hubris_imagegen.errors import SnapshotError

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_NAMES = frozenset({"target", ".git", "result", ".direnv"})

# Normalised modes; only the executable bit survives filtering
FILE_MODE = 0o644
EXEC_MODE = 0o755

HASH_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class SnapshotEntry:
    """One file or symlink in a snapshot.

    Attributes:
        path: POSIX path relative to the snapshot root.
        kind: 'file' or 'symlink'.
        mode: Normalised mode (0o644 or 0o755; 0 for symlinks).
        digest: SHA-256 of the content, or the link target for symlinks.
    """

    path: str
    kind: str
    mode: int
    digest: str


@dataclass(frozen=True)
class SourceSnapshot:
    """Immutable reference to a filtered project tree."""

    root: Path
    excluded_names: frozenset[str]
    entries: tuple[SnapshotEntry, ...]
    digest: str
    _index: dict[str, SnapshotEntry] = field(
        init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {e.path: e for e in self.entries})

    @property
    def paths(self) -> list[str]:
        """All snapshot paths in sorted order."""
        return [e.path for e in self.entries]

    def has(self, path: str) -> bool:
        """Check whether a relative path is part of the snapshot."""
        return _normalize(path) in self._index

    def entry(self, path: str) -> SnapshotEntry:
        """Return the entry for a path.

        Raises:
            KeyError: If the path is not in the snapshot.
        """
        return self._index[_normalize(path)]

    def files_named(self, name: str) -> list[str]:
        """Return snapshot paths whose base name equals ``name``."""
        return [
            e.path
            for e in self.entries
            if e.kind == "file" and PurePosixPath(e.path).name == name
        ]

    def read_bytes(self, path: str) -> bytes:
        """Read a file from the snapshot, verifying it has not changed.

        Raises:
            KeyError: If the path is not in the snapshot.
            SnapshotError: If the file changed or cannot be read.
        """
        entry = self.entry(path)
        if entry.kind != "file":
            raise SnapshotError(f"Not a regular file in snapshot: {path}")
        try:
            content = (self.root / entry.path).read_bytes()
        except OSError as e:
            raise SnapshotError(
                f"Cannot read {entry.path} from {self.root}: {e}",
                code="snapshot_unreadable",
            ) from e
        if hashlib.sha256(content).hexdigest() != entry.digest:
            raise SnapshotError(
                f"Source changed since snapshot was taken: {entry.path}",
                code="snapshot_modified",
            )
        return content

    def read_text(self, path: str) -> str:
        """Read a UTF-8 text file from the snapshot."""
        return self.read_bytes(path).decode("utf-8")

    def materialize(self, dest: Path, paths: Iterable[str] | None = None) -> Path:
        """Copy the snapshot (or a subset of it) into a writable directory.

        Args:
            dest: Destination directory; created if missing.
            paths: Optional subset of snapshot paths to copy.

        Returns:
            The destination directory.

        Raises:
            SnapshotError: If a file changed since the snapshot was taken.
        """
        dest.mkdir(parents=True, exist_ok=True)
        selected = (
            self.entries if paths is None else [self.entry(p) for p in sorted(paths)]
        )
        for entry in selected:
            target = dest / entry.path
            target.parent.mkdir(parents=True, exist_ok=True)
            if entry.kind == "symlink":
                os.symlink(entry.digest, target)
                continue
            target.write_bytes(self.read_bytes(entry.path))
            # Work trees are writable copies of the snapshot
            target.chmod(entry.mode | stat.S_IWUSR)
        logger.debug("Materialised %d entries into %s", len(selected), dest)
        return dest


def _normalize(path: str) -> str:
    return PurePosixPath(path).as_posix()


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
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


def compute_snapshot_digest(entries: Iterable[SnapshotEntry]) -> str:
    """Compute the digest of a set of snapshot entries.

    The hash is computed over entries sorted by path, each contributing
    path, kind, mode and content digest separated by NUL bytes.

    Args:
        entries: Snapshot entries in any order.

    Returns:
        SHA-256 hex digest.
    """
    hasher = hashlib.sha256()
    for entry in sorted(entries, key=lambda e: e.path):
        hasher.update(entry.path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(entry.kind.encode())
        hasher.update(b"\0")
        hasher.update(f"{entry.mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(entry.digest.encode())
        hasher.update(b"\0")
    return hasher.hexdigest()


def _raise_walk_error(error: OSError) -> None:
    raise SnapshotError(
        f"Cannot read source tree entry {error.filename}: {error.strerror}",
        code="snapshot_unreadable",
    ) from error


def filter_source(
    root: Path,
    excluded_names: Iterable[str] = DEFAULT_EXCLUDED_NAMES,
) -> SourceSnapshot:
    """Produce a filtered snapshot of a project tree.

    Any entry whose base name is excluded is pruned along with its whole
    subtree. The original tree is never modified.

    Args:
        root: Project root directory.
        excluded_names: Base names to prune.

    Returns:
        SourceSnapshot of the filtered tree.

    Raises:
        SnapshotError: If root does not exist, is not a directory, or any
            part of the tree cannot be read.
    """
    excluded = frozenset(excluded_names)
    root = Path(root)

    if not root.exists():
        raise SnapshotError(f"Source root does not exist: {root}", code="root_missing")
    if not root.is_dir():
        raise SnapshotError(
            f"Source root is not a directory: {root}", code="root_not_dir"
        )
    if not os.access(root, os.R_OK | os.X_OK):
        raise SnapshotError(
            f"Source root is not readable: {root}", code="snapshot_unreadable"
        )

    root = root.resolve()
    entries: list[SnapshotEntry] = []

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        current = Path(dirpath)

        kept_dirs: list[str] = []
        for name in dirnames:
            if name in excluded:
                continue
            path = current / name
            if path.is_symlink():
                # os.walk does not descend into symlinked directories
                rel = path.relative_to(root).as_posix()
                entries.append(SnapshotEntry(rel, "symlink", 0, os.readlink(path)))
                continue
            kept_dirs.append(name)
        dirnames[:] = sorted(kept_dirs)

        for name in sorted(filenames):
            if name in excluded:
                continue
            path = current / name
            rel = path.relative_to(root).as_posix()
            try:
                if path.is_symlink():
                    entries.append(SnapshotEntry(rel, "symlink", 0, os.readlink(path)))
                    continue
                st_mode = path.stat().st_mode
                if not stat.S_ISREG(st_mode):
                    logger.debug("Skipping special file: %s", rel)
                    continue
                mode = EXEC_MODE if st_mode & stat.S_IXUSR else FILE_MODE
                entries.append(SnapshotEntry(rel, "file", mode, compute_file_hash(path)))
            except OSError as e:
                raise SnapshotError(
                    f"Cannot read {rel} under {root}: {e}",
                    code="snapshot_unreadable",
                ) from e

    entries.sort(key=lambda e: e.path)
    digest = compute_snapshot_digest(entries)
    logger.info(
        "Snapshot of %s: %d entries (digest=%s)", root, len(entries), digest[:16]
    )
    return SourceSnapshot(
        root=root,
        excluded_names=excluded,
        entries=tuple(entries),
        digest=digest,
    )


def copy_tree(source: Path, dest: Path) -> None:
    """Copy a directory tree, preserving symlinks and making files writable."""
    shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
    for path in dest.rglob("*"):
        if not path.is_symlink():
            path.chmod(path.stat().st_mode | stat.S_IWUSR)


__all__ = [
    "DEFAULT_EXCLUDED_NAMES",
    "SnapshotEntry",
    "SourceSnapshot",
    "compute_file_hash",
    "compute_snapshot_digest",
    "copy_tree",
    "filter_source",
]
