"""Tests for builds/service.py module.

Tests the end-to-end image pipeline with a FakeRunner: publishing,
build records, cache reuse, failures, batches and history queries.
"""

import json

import pytest

from hubris_imagegen.builds.executor import BuildExecutor
from hubris_imagegen.builds.identity import IdentityOverrides
from hubris_imagegen.builds.service import (
    BuildNotFoundError,
    ImageRequest,
    build_batch,
    build_image,
    get_build,
    get_build_artifacts,
    list_artifacts,
    list_builds,
)
from hubris_imagegen.errors import ExecutionError, PlanningError
from hubris_imagegen.types import BatchMode, BuildStatus, Stage

from tests.conftest import FakeRunner, populate_vendor

DEMO = "app/demo/app.toml"


@pytest.fixture
def executor(store, fake_runner, settings):
    """Executor over the shared FakeRunner."""
    return BuildExecutor(store, fake_runner, settings)


@pytest.fixture
def batch_settings(settings):
    """Offline settings with a single batch worker."""
    return settings.model_copy(update={"offline": True, "max_concurrent_builds": 1})


def _build(store, settings, executor, snapshot, vendor_store, path=DEMO, **kwargs):
    return build_image(
        store,
        path,
        settings=settings,
        executor=executor,
        snapshot=snapshot,
        vendor_store=vendor_store,
        **kwargs,
    )


class TestBuildImage:
    """Tests for build_image function."""

    def test_publishes_artifacts(
        self, store, settings, executor, snapshot, vendor_store
    ):
        """Artifacts are copied to <artifacts_dir>/<name>/<version>/."""
        result = _build(store, settings, executor, snapshot, vendor_store)

        dest = settings.artifacts_dir / "demo" / "0.1.0"
        assert sorted(result.published) == ["build-demo.zip", "final.bin", "final.elf"]
        assert (dest / "final.elf").read_bytes().startswith(b"\x7fELF")
        assert [a.relative_path for a in result.artifacts] == [
            "demo/0.1.0/build-demo.zip",
            "demo/0.1.0/final.bin",
            "demo/0.1.0/final.elf",
        ]

    def test_writes_manifest(self, store, settings, executor, snapshot, vendor_store):
        """A manifest.json describes the published image."""
        result = _build(store, settings, executor, snapshot, vendor_store)

        manifest = json.loads(
            (settings.artifacts_dir / "demo" / "0.1.0" / "manifest.json").read_text()
        )
        assert manifest["name"] == "demo"
        assert manifest["build_id"] == result.build.id
        assert manifest["stage1_key"] == result.stage1.key
        assert manifest["stage2_key"] == result.stage2.key
        assert manifest["manifest_path"] == DEMO
        assert manifest["summary"]["total_artifacts"] == 3

    def test_records_build(self, store, settings, executor, snapshot, vendor_store):
        """A succeeded record with its artifacts is persisted."""
        result = _build(store, settings, executor, snapshot, vendor_store)

        with store.session() as session:
            build = get_build(session, result.build.id)
            assert build.status == BuildStatus.SUCCEEDED.value
            assert build.manifest_path == DEMO
            assert build.source_digest == snapshot.digest
            assert build.stage2_key == result.stage2.key
            assert build.out_path == str(result.stage2.out_path)
            assert not build.is_cache_hit
            assert sorted(a.kind for a in build.artifacts) == ["archive", "bin", "elf"]

    def test_rebuild_is_cache_hit(
        self, store, settings, executor, snapshot, vendor_store, fake_runner
    ):
        """Building the same image again runs nothing."""
        first = _build(store, settings, executor, snapshot, vendor_store)
        second = _build(store, settings, executor, snapshot, vendor_store)

        assert second.cache_hit
        assert second.stage1.cache_hit
        assert second.stage2.out_path == first.stage2.out_path
        assert second.build.id != first.build.id
        assert len(fake_runner.runs) == 2

    def test_variant_reuses_stage1(
        self, store, settings, executor, snapshot, vendor_store, fake_runner
    ):
        """A second manifest over the same crates reuses the dependency layer."""
        _build(store, settings, executor, snapshot, vendor_store)
        dev = _build(
            store, settings, executor, snapshot, vendor_store, "app/demo/app-dev.toml"
        )

        assert dev.stage1.cache_hit
        assert not dev.cache_hit
        assert fake_runner.count(Stage.DEPS) == 1
        assert fake_runner.count(Stage.FULL) == 2

    def test_version_override(self, store, settings, executor, snapshot, vendor_store):
        """Overrides change where the image is published."""
        result = _build(
            store,
            settings,
            executor,
            snapshot,
            vendor_store,
            overrides=IdentityOverrides(version="1.2.0"),
        )

        assert result.to_dict()["version"] == "1.2.0"
        assert (settings.artifacts_dir / "demo" / "1.2.0" / "final.bin").exists()

    def test_snapshot_and_vendor_from_root(self, store, settings, executor, project):
        """Without precomputed inputs the project is snapshotted and vendored."""
        populate_vendor(store)
        offline = settings.model_copy(update={"offline": True})

        result = build_image(
            store, DEMO, root=project, settings=offline, executor=executor
        )

        assert result.build.source_root == str(project)

    def test_execution_failure_marks_record(
        self, store, settings, snapshot, vendor_store
    ):
        """A failing build raises and leaves a failed record."""
        executor = BuildExecutor(store, FakeRunner(fail_on="demo"), settings)

        with pytest.raises(ExecutionError):
            _build(store, settings, executor, snapshot, vendor_store)

        with store.session() as session:
            (build,) = list_builds(session)
            assert build.status == BuildStatus.FAILED.value
            assert build.error_type == "execution_error"
            assert "cannot find value `x`" in build.error_message
        assert not (settings.artifacts_dir / "demo").exists()

    def test_stage1_failure_points_at_its_log(
        self, store, settings, snapshot, vendor_store
    ):
        """A failed dependency layer records the dependency layer's log."""
        runner = FakeRunner(fail_on="cargo-deps")
        executor = BuildExecutor(store, runner, settings)

        with pytest.raises(ExecutionError):
            _build(store, settings, executor, snapshot, vendor_store)

        with store.session() as session:
            (build,) = list_builds(session)
            assert build.log_path.endswith("-cargo-deps.log")
        assert runner.names == ["cargo-deps"]

    def test_publish_failure_marks_record(
        self, store, settings, executor, snapshot, vendor_store, tmp_path
    ):
        """A build whose artifacts cannot be published is marked failed."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        broken = settings.model_copy(update={"artifacts_dir": blocker})

        with pytest.raises(OSError):
            _build(store, broken, executor, snapshot, vendor_store)

        with store.session() as session:
            (build,) = list_builds(session)
            assert build.status == BuildStatus.FAILED.value
            assert build.error_type in ("FileExistsError", "NotADirectoryError")
            assert build.finished_at is not None

    def test_planning_failure_creates_no_record(
        self, store, settings, executor, snapshot, vendor_store
    ):
        """Invalid manifests fail before any record is written."""
        with pytest.raises(PlanningError):
            _build(store, settings, executor, snapshot, vendor_store, "app/x/app.toml")

        with store.session() as session:
            assert list_builds(session) == []


class TestBuildBatch:
    """Tests for build_batch function."""

    def test_best_effort(self, store, batch_settings, executor, project, vendor_store):
        """Every image is attempted; failures are reported per image."""
        requests = [
            ImageRequest(DEMO, label="demo"),
            ImageRequest("app/missing/app.toml"),
            ImageRequest("app/lite/app.toml"),
        ]

        result = build_batch(
            store, requests, root=project, settings=batch_settings, executor=executor
        )

        assert (result.total, result.succeeded, result.failed) == (3, 2, 1)
        assert [r["image"] for r in result.results] == [
            "demo",
            "app/missing/app.toml",
            "app/lite/app.toml",
        ]
        failure = result.results[1]
        assert failure["success"] is False
        assert failure["error_code"] == "manifest_missing"
        assert failure["error_category"] == "configuration"
        assert not result.stopped_early

    def test_shared_dependency_layer(
        self, store, batch_settings, executor, project, vendor_store, fake_runner
    ):
        """Images with one dependency set compile it once."""
        requests = [ImageRequest(DEMO), ImageRequest("app/demo/app-dev.toml")]

        result = build_batch(
            store, requests, root=project, settings=batch_settings, executor=executor
        )

        assert result.succeeded == 2
        assert fake_runner.count(Stage.DEPS) == 1
        assert fake_runner.count(Stage.FULL) == 2

    def test_concurrent_workers_share_stage1(
        self, store, batch_settings, executor, project, vendor_store, fake_runner
    ):
        """Parallel workers still run the shared dependency layer once."""
        parallel = batch_settings.model_copy(update={"max_concurrent_builds": 4})
        requests = [
            ImageRequest(DEMO),
            ImageRequest("app/demo/app-dev.toml"),
            ImageRequest(DEMO, IdentityOverrides(version="2.0.0")),
        ]

        result = build_batch(
            store, requests, root=project, settings=parallel, executor=executor
        )

        assert result.succeeded == 3
        assert fake_runner.count(Stage.DEPS) == 1

    def test_fail_fast(self, store, batch_settings, executor, project, vendor_store):
        """fail-fast skips images not yet started after a failure."""
        requests = [
            ImageRequest("app/missing/app.toml"),
            ImageRequest(DEMO),
            ImageRequest("app/lite/app.toml"),
        ]

        result = build_batch(
            store,
            requests,
            root=project,
            settings=batch_settings,
            mode=BatchMode.FAIL_FAST,
            executor=executor,
        )

        assert result.stopped_early
        assert (result.failed, result.skipped, result.succeeded) == (1, 2, 0)
        assert result.results[1] == {
            "image": DEMO,
            "manifest_path": DEMO,
            "success": False,
            "skipped": True,
        }

    def test_cache_hits_counted(
        self, store, batch_settings, executor, project, vendor_store
    ):
        """A rebuilt batch reports cache hits."""
        requests = [ImageRequest(DEMO)]
        build_batch(
            store, requests, root=project, settings=batch_settings, executor=executor
        )

        again = build_batch(
            store, requests, root=project, settings=batch_settings, executor=executor
        )

        assert again.cache_hits == 1
        assert again.results[0]["is_cache_hit"] is True


class TestBuildQueries:
    """Tests for build history queries."""

    def test_list_builds_filters(
        self, store, settings, executor, snapshot, vendor_store
    ):
        """Builds can be filtered by name and status, newest first."""
        first = _build(store, settings, executor, snapshot, vendor_store)
        lite = _build(
            store, settings, executor, snapshot, vendor_store, "app/lite/app.toml"
        )
        second = _build(store, settings, executor, snapshot, vendor_store)

        with store.session() as session:
            demo_ids = [b.id for b in list_builds(session, name="demo")]
            succeeded = list_builds(session, status=BuildStatus.SUCCEEDED)
            failed = list_builds(session, status=BuildStatus.FAILED)
            limited = list_builds(session, limit=1)

        assert demo_ids == [second.build.id, first.build.id]
        assert len(succeeded) == 3
        assert failed == []
        assert [b.id for b in limited] == [second.build.id]
        assert lite.build.name == "lite"

    def test_get_build_not_found(self, store):
        """Unknown IDs raise BuildNotFoundError."""
        with store.session() as session, pytest.raises(BuildNotFoundError) as exc_info:
            get_build(session, 999)

        assert exc_info.value.code == "build_not_found"
        assert exc_info.value.build_id == 999

    def test_artifact_queries(self, store, settings, executor, snapshot, vendor_store):
        """Artifacts are listed per build and by kind."""
        result = _build(store, settings, executor, snapshot, vendor_store)

        with store.session() as session:
            artifacts = get_build_artifacts(session, result.build.id)
            bins = list_artifacts(session, kind="bin")
            none = list_artifacts(session, build_id=result.build.id + 1)

        assert len(artifacts) == 3
        assert [a.filename for a in bins] == ["final.bin"]
        assert none == []
