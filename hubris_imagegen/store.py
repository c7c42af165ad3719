"""Content-addressed store for vendored dependencies and derivation outputs.

This module handles:
- Store layout (derivations/, vendor/, locks/, tmp/ under one root)
- Write-once commits: content is produced in tmp/ and renamed into place
- Cache entry and vendor entry bookkeeping in the database
- Cross-process locking per key

The store is an injectable object so that tests can point it at a
temporary directory and an in-memory database.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import shutil
import stat
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from hubris_imagegen.builds.models import CacheEntry
from hubris_imagegen.db import get_session
from hubris_imagegen.errors import StoreLockTimeout
from hubris_imagegen.vendor.models import VendorEntry

logger = logging.getLogger(__name__)

# Length of the hash prefix used in store directory names
STORE_HASH_LENGTH = 32


@dataclass(frozen=True)
class StoredOutput:
    """A committed derivation output.

    Attributes:
        key: Derivation input hash.
        name: Derivation name.
        stage: Cache layer the derivation belongs to.
        path: Store directory holding the outputs.
        outputs: Sorted top-level names in the output directory.
    """

    key: str
    name: str
    stage: str
    path: Path
    outputs: tuple[str, ...]

    @classmethod
    def from_entry(cls, entry: CacheEntry) -> StoredOutput:
        return cls(
            key=entry.key,
            name=entry.name,
            stage=entry.stage,
            path=Path(entry.out_path),
            outputs=tuple(entry.outputs or ()),
        )


@dataclass(frozen=True)
class StoredDependency:
    """A committed vendored dependency."""

    name: str
    version: str
    source: str
    checksum: str | None
    path: Path
    digest: str

    @classmethod
    def from_entry(cls, entry: VendorEntry) -> StoredDependency:
        return cls(
            name=entry.name,
            version=entry.version,
            source=entry.source,
            checksum=entry.checksum,
            path=Path(entry.path),
            digest=entry.digest,
        )


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over sorted relative paths, the executable bit and
    the content of every regular file, and the target of every symlink.

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        rel_path = path.relative_to(directory).as_posix()
        if path.is_symlink():
            payload = os.readlink(path).encode("utf-8")
            mode = "l"
        elif path.is_file():
            payload = path.read_bytes()
            mode = "x" if path.stat().st_mode & stat.S_IXUSR else "f"
        else:
            continue

        # Hash: path\0mode\0content
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(mode.encode())
        hasher.update(b"\0")
        hasher.update(payload)
        hasher.update(b"\0")

    return hasher.hexdigest()


def _key_digest(key: str) -> str:
    return key.rsplit(":", 1)[-1][:STORE_HASH_LENGTH]


class Store:
    """Append-only, write-once store rooted at a directory.

    Args:
        root: Store root directory; created if missing.
        session_factory: Factory for database sessions.
    """

    def __init__(self, root: Path, session_factory: sessionmaker[Session]) -> None:
        self.root = Path(root)
        self.session_factory = session_factory
        self.derivations_dir = self.root / "derivations"
        self.vendor_dir = self.root / "vendor"
        self.locks_dir = self.root / "locks"
        self.logs_dir = self.root / "logs"
        self.tmp_root = self.root / "tmp"
        for directory in (
            self.derivations_dir,
            self.vendor_dir,
            self.locks_dir,
            self.logs_dir,
            self.tmp_root,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        # One SQLite connection may be shared by worker threads
        self._db_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Store(root='{self.root}')>"

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session serialised with all other store DB access."""
        with self._db_lock, get_session(self.session_factory) as session:
            yield session

    # -- scratch space -------------------------------------------------

    def temp_dir(self, prefix: str = "tmp-") -> Path:
        """Create a scratch directory on the store's filesystem.

        Content produced here can be committed with an atomic rename.
        """
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.tmp_root))

    @contextmanager
    def lock(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Acquire a cross-process lock for a store key.

        Args:
            key: Key to lock on.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Yields:
            None when lock is acquired.

        Raises:
            StoreLockTimeout: If lock cannot be acquired within timeout.
        """
        safe_key = key.replace(":", "_").replace("/", "_")[:64]
        lock_file = self.locks_dir / f"build_{safe_key}.lock"

        logger.debug("Acquiring store lock for key: %s", key[:32])

        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
        lock_acquired = False
        try:
            if timeout is not None:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        lock_acquired = True
                        break
                    except BlockingIOError:
                        if time.monotonic() - start >= timeout:
                            raise StoreLockTimeout(key, timeout) from None
                        time.sleep(0.1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
                lock_acquired = True

            logger.debug("Store lock acquired for key: %s", key[:32])
            yield
        finally:
            if lock_acquired:
                fcntl.flock(fd, fcntl.LOCK_UN)
                logger.debug("Store lock released for key: %s", key[:32])
            os.close(fd)

    def _install(self, tmp_path: Path, dest: Path) -> None:
        """Rename tmp_path to dest unless dest already exists."""
        if dest.exists():
            logger.debug("Store path %s already present, discarding new copy", dest)
            shutil.rmtree(tmp_path, ignore_errors=True)
            return
        try:
            os.rename(tmp_path, dest)
        except OSError:
            if not dest.exists():
                raise
            # Lost a race against another writer; first writer wins
            shutil.rmtree(tmp_path, ignore_errors=True)

    # -- derivation outputs --------------------------------------------

    def derivation_path(self, key: str, name: str) -> Path:
        """Return the store directory for a derivation output."""
        return self.derivations_dir / f"{_key_digest(key)}-{name}"

    def lookup(self, key: str) -> StoredOutput | None:
        """Look up a committed derivation output.

        Args:
            key: Derivation input hash.

        Returns:
            StoredOutput, or None if the key has no usable entry.
        """
        with self.session() as session:
            entry = session.execute(
                select(CacheEntry).where(CacheEntry.key == key)
            ).scalar_one_or_none()
            if entry is None:
                return None
            stored = StoredOutput.from_entry(entry)

        if not stored.path.is_dir():
            logger.warning(
                "Cache entry %s points to missing path %s", key[:32], stored.path
            )
            return None
        return stored

    def commit(self, key: str, name: str, stage: str, tmp_out: Path) -> StoredOutput:
        """Commit a fully produced output directory under a key.

        The directory is renamed into the store and a cache entry recorded.
        If another writer committed the same key first, the existing entry
        is returned and tmp_out is discarded.

        Args:
            key: Derivation input hash.
            name: Derivation name.
            stage: Cache layer.
            tmp_out: Directory created with temp_dir().

        Returns:
            The committed StoredOutput.
        """
        dest = self.derivation_path(key, name)
        self._install(tmp_out, dest)
        outputs = sorted(p.name for p in dest.iterdir())

        try:
            with self.session() as session:
                entry = CacheEntry(
                    key=key,
                    name=name,
                    stage=stage,
                    out_path=str(dest),
                    outputs=outputs,
                )
                session.add(entry)
                session.flush()
                stored = StoredOutput.from_entry(entry)
        except IntegrityError:
            logger.debug("Cache entry for %s already recorded", key[:32])
            existing = self.lookup(key)
            if existing is None:
                raise
            return existing

        logger.info("Committed %s (%s) to %s", name, stage, dest)
        return stored

    def list_entries(self, stage: str | None = None) -> list[StoredOutput]:
        """List committed derivation outputs, newest first."""
        with self.session() as session:
            stmt = select(CacheEntry).order_by(CacheEntry.id.desc())
            if stage is not None:
                stmt = stmt.where(CacheEntry.stage == stage)
            return [StoredOutput.from_entry(e) for e in session.scalars(stmt)]

    # -- vendored dependencies -----------------------------------------

    def dependency_path(self, name: str, version: str, source: str) -> Path:
        """Return the store directory for a vendored dependency."""
        digest = hashlib.sha256(f"{name}\0{version}\0{source}".encode()).hexdigest()
        return self.vendor_dir / f"{digest[:STORE_HASH_LENGTH]}-{name}-{version}"

    def lookup_dependency(
        self, name: str, version: str, source: str
    ) -> StoredDependency | None:
        """Look up a vendored dependency by (name, version, source)."""
        with self.session() as session:
            entry = session.execute(
                select(VendorEntry).where(
                    VendorEntry.name == name,
                    VendorEntry.version == version,
                    VendorEntry.source == source,
                )
            ).scalar_one_or_none()
            if entry is None:
                return None
            stored = StoredDependency.from_entry(entry)

        if not stored.path.is_dir():
            logger.warning(
                "Vendor entry %s %s points to missing path %s",
                name,
                version,
                stored.path,
            )
            return None
        return stored

    def commit_dependency(
        self,
        name: str,
        version: str,
        source: str,
        checksum: str | None,
        tmp_dir: Path,
    ) -> StoredDependency:
        """Commit a materialised dependency directory.

        Args:
            name: Package name.
            version: Package version.
            source: Lockfile source string.
            checksum: Registry checksum, if any.
            tmp_dir: Directory created with temp_dir().

        Returns:
            The committed StoredDependency.
        """
        dest = self.dependency_path(name, version, source)
        self._install(tmp_dir, dest)
        digest = compute_tree_hash(dest)

        try:
            with self.session() as session:
                entry = VendorEntry(
                    name=name,
                    version=version,
                    source=source,
                    checksum=checksum,
                    path=str(dest),
                    digest=digest,
                )
                session.add(entry)
                session.flush()
                stored = StoredDependency.from_entry(entry)
        except IntegrityError:
            existing = self.lookup_dependency(name, version, source)
            if existing is None:
                raise
            return existing

        logger.info("Vendored %s %s into %s", name, version, dest)
        return stored


__all__ = [
    "Store",
    "StoredDependency",
    "StoredOutput",
    "compute_tree_hash",
]
