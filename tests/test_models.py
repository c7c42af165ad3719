"""Tests for ORM models.

These tests verify the database models, relationships and constraints
using an in-memory SQLite database.
"""

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from hubris_imagegen.builds.models import Artifact, BuildRecord, CacheEntry
from hubris_imagegen.db import Base, create_all_tables, get_engine, get_session
from hubris_imagegen.types import BuildStatus
from hubris_imagegen.vendor.models import VendorEntry


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def build_record(session):
    """A persisted pending build."""
    build = BuildRecord(
        name="demo",
        version="0.1.0",
        manifest_path="app/demo/app.toml",
        stage1_key="sha256:1",
        stage2_key="sha256:2",
    )
    session.add(build)
    session.commit()
    return build


class TestDatabaseSetup:
    """Test database setup and helpers."""

    def test_create_all_tables(self, tmp_path):
        """create_all_tables should create all model tables."""
        engine = get_engine(f"sqlite:///{tmp_path / 'nested' / 'test.db'}")
        create_all_tables(engine)

        for table in ("cache_entries", "vendor_entries", "build_records", "artifacts"):
            assert table in Base.metadata.tables
        assert (tmp_path / "nested" / "test.db").exists()

    def test_get_session_commits(self, engine):
        """get_session commits on success."""
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with get_session(factory) as session:
            session.add(
                CacheEntry(key="sha256:a", name="demo", stage="full", out_path="/x")
            )

        with get_session(factory) as session:
            entry = session.scalars(select(CacheEntry)).one()
            assert entry.outputs == []

    def test_get_session_rolls_back(self, engine):
        """get_session rolls back when the block raises."""
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with pytest.raises(RuntimeError), get_session(factory) as session:
            session.add(
                CacheEntry(key="sha256:a", name="demo", stage="full", out_path="/x")
            )
            raise RuntimeError("boom")

        with get_session(factory) as session:
            assert session.scalars(select(CacheEntry)).all() == []


class TestCacheEntryModel:
    """Test CacheEntry model."""

    def test_unique_key(self, session):
        """A key can be recorded only once."""
        session.add(CacheEntry(key="sha256:a", name="a", stage="deps", out_path="/a"))
        session.commit()

        session.add(CacheEntry(key="sha256:a", name="b", stage="deps", out_path="/b"))
        with pytest.raises(IntegrityError):
            session.commit()

    def test_repr(self, session):
        """repr shows name, stage and a key prefix."""
        entry = CacheEntry(key="sha256:" + "f" * 64, name="cargo-deps", stage="deps")

        assert "cargo-deps" in repr(entry)
        assert "stage='deps'" in repr(entry)


class TestVendorEntryModel:
    """Test VendorEntry model."""

    def test_unique_name_version_source(self, session):
        """One row per (name, version, source)."""
        fields = {"name": "heapless", "version": "0.8.0", "path": "/v", "digest": "d"}
        session.add(VendorEntry(source="registry+x", **fields))
        session.add(VendorEntry(source="git+y", **fields))
        session.commit()

        session.add(VendorEntry(source="registry+x", **fields))
        with pytest.raises(IntegrityError):
            session.commit()


class TestBuildRecordModel:
    """Test BuildRecord model."""

    def test_defaults(self, build_record):
        """New records are pending and not cache hits."""
        assert build_record.status == BuildStatus.PENDING.value
        assert build_record.is_cache_hit is False
        assert build_record.requested_at is not None

    def test_status_methods(self, session, build_record):
        """mark_running and mark_succeeded set status and timestamps."""
        build_record.mark_running()
        assert build_record.status == BuildStatus.RUNNING.value
        assert build_record.started_at is not None

        build_record.mark_succeeded()
        session.commit()
        assert build_record.is_succeeded()
        assert build_record.finished_at is not None

    def test_failure(self, build_record):
        """mark_failed records the error."""
        build_record.mark_failed(error_type="execution_error", message="exit 101")

        assert build_record.status == BuildStatus.FAILED.value
        assert build_record.error_type == "execution_error"
        assert build_record.error_message == "exit 101"
        assert not build_record.is_succeeded()

    def test_artifacts_relationship(self, session, build_record):
        """Artifacts are reachable from their build and back."""
        artifact = Artifact(
            build_id=build_record.id,
            kind="bin",
            relative_path="demo/0.1.0/final.bin",
            filename="final.bin",
            size_bytes=1024,
            sha256="a" * 64,
        )
        session.add(artifact)
        session.commit()
        session.refresh(build_record)

        assert [a.filename for a in build_record.artifacts] == ["final.bin"]
        assert artifact.build.name == "demo"
        assert "final.bin" in repr(artifact)

    def test_repr(self, build_record):
        """repr names the image."""
        assert "name='demo'" in repr(build_record)
