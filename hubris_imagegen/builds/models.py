"""Build ORM models.

This module defines the CacheEntry model for committed derivation outputs
and the BuildRecord and Artifact models for image build history.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hubris_imagegen.db import Base
from hubris_imagegen.types import BuildStatus


class CacheEntry(Base):
    """ORM model for a committed derivation output.

    One row per derivation input hash. Rows are inserted once, after the
    output directory has been renamed into the store, and never updated.

    Attributes:
        id: Primary key.
        key: Derivation input hash (sha256:...).
        name: Derivation name.
        stage: Cache layer ('deps' or 'full').
        out_path: Store directory holding the outputs.
        outputs: Sorted top-level names in the output directory.
        created_at: Timestamp of the commit.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)

    out_path: Mapped[str] = mapped_column(String(500), nullable=False)
    outputs: Mapped[list[str] | None] = mapped_column(JSON, nullable=True, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        """Return string representation of CacheEntry."""
        return (
            f"<CacheEntry(id={self.id}, name='{self.name}', stage='{self.stage}', "
            f"key='{self.key[:16]}...')>"
        )


class BuildRecord(Base):
    """ORM model for image build records.

    A BuildRecord captures a single image build invocation: the manifest
    and identity it was built for, the keys of both cache layers, status
    and the artifacts it produced.

    Attributes:
        id: Primary key.
        name: Image name.
        version: Image version.
        manifest_path: Manifest path relative to the project root.
        source_root: Project root the snapshot was taken from.
        source_digest: Digest of the filtered source snapshot.
        stage1_key: Input hash of the dependency layer.
        stage2_key: Input hash of the full image derivation.
        status: Build status (pending, running, succeeded, failed).
        requested_at: Timestamp when build was requested.
        started_at: Timestamp when build started executing.
        finished_at: Timestamp when build finished.
        out_path: Store directory of the image derivation.
        log_path: Path to the build log file.
        error_type: Type of error if build failed.
        error_message: Error message if build failed.
        is_cache_hit: Whether the image derivation was reused.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    manifest_path: Mapped[str] = mapped_column(String(500), nullable=False)
    source_root: Mapped[str | None] = mapped_column(String(500), nullable=True)
    source_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Cache layers
    stage1_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stage2_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Paths
    out_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="build", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_build_records_name_status", "name", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, name='{self.name}', "
            f"version='{self.version}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class Artifact(Base):
    """ORM model for image artifacts.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        kind: Artifact class (archive, elf, bin).
        relative_path: Path relative to the artifacts root.
        absolute_path: Full filesystem path of the published copy.
        filename: Artifact filename.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )

    kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    absolute_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    build: Mapped["BuildRecord"] = relationship(
        "BuildRecord", back_populates="artifacts"
    )

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, build_id={self.build_id}, "
            f"filename='{self.filename}', kind='{self.kind}')>"
        )


__all__ = ["Artifact", "BuildRecord", "CacheEntry"]
