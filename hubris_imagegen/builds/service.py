"""Image build service.

This module provides the high-level build API:
- build_image(): snapshot, vendor, plan, execute both stages, publish
- build_batch(): several images from one snapshot with a thread pool
- Build record and artifact persistence
- History queries
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from hubris_imagegen.builds.artifacts import (
    MANIFEST_NAME,
    discover_artifacts,
    generate_manifest,
    publish_artifacts,
    publish_dir,
    write_manifest,
)
from hubris_imagegen.builds.executor import BuildExecutor, ExecutionResult
from hubris_imagegen.builds.models import Artifact, BuildRecord
from hubris_imagegen.builds.planner import ImagePlan, prepare_plan
from hubris_imagegen.builds.runner import SubprocessRunner
from hubris_imagegen.config import get_settings
from hubris_imagegen.errors import ExecutionError
from hubris_imagegen.source.snapshot import filter_source
from hubris_imagegen.types import ArtifactInfo, BatchMode, BuildStatus
from hubris_imagegen.vendor.service import vendor

if TYPE_CHECKING:
    import httpx

    from hubris_imagegen.builds.identity import IdentityOverrides, ManifestIdentity
    from hubris_imagegen.config import Settings
    from hubris_imagegen.source.snapshot import SourceSnapshot
    from hubris_imagegen.store import Store
    from hubris_imagegen.vendor.service import VendorStore

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


@dataclass(frozen=True)
class ImageRequest:
    """One image to build.

    Attributes:
        manifest_path: Manifest path relative to the project root.
        overrides: Optional identity overrides.
        label: Name used to report the result (defaults to manifest_path).
    """

    manifest_path: str
    overrides: IdentityOverrides | None = None
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or self.manifest_path


@dataclass
class ImageBuildResult:
    """Outcome of building one image.

    Attributes:
        build: Persisted build record (detached).
        identity: Image identity.
        stage1: Dependency layer execution.
        stage2: Image derivation execution.
        artifacts: Published artifacts.
        published: Filename to published path.
    """

    build: BuildRecord
    identity: ManifestIdentity
    stage1: ExecutionResult
    stage2: ExecutionResult
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    published: dict[str, Path] = field(default_factory=dict)

    @property
    def cache_hit(self) -> bool:
        """Whether the image derivation was reused from the store."""
        return self.stage2.cache_hit

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build.id,
            "name": self.identity.name,
            "version": self.identity.version,
            "stage1_key": self.stage1.key,
            "stage2_key": self.stage2.key,
            "stage1_cache_hit": self.stage1.cache_hit,
            "is_cache_hit": self.cache_hit,
            "out_path": str(self.stage2.out_path),
            "artifacts": [
                {
                    "filename": a.filename,
                    "kind": a.kind,
                    "size_bytes": a.size_bytes,
                    "sha256": a.sha256,
                    "path": str(self.published.get(a.filename, "")),
                }
                for a in self.artifacts
            ],
        }


class BatchBuildResult(BaseModel):
    """Summary of a batch build."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cache_hits: int = 0
    stopped_early: bool = False
    results: list[dict[str, Any]] = Field(default_factory=list)


def default_executor(store: Store, settings: Settings) -> BuildExecutor:
    """Executor running derivations as subprocesses against a store."""
    return BuildExecutor(store, SubprocessRunner(settings), settings)


def _create_build_record(
    store: Store,
    plan: ImagePlan,
    snapshot: SourceSnapshot,
    log_path: Path,
) -> BuildRecord:
    with store.session() as session:
        build = BuildRecord(
            name=plan.identity.name,
            version=plan.identity.version,
            manifest_path=plan.manifest_path,
            source_root=str(snapshot.root),
            source_digest=snapshot.digest,
            stage1_key=plan.stage1.input_hash,
            stage2_key=plan.derivation.input_hash,
            status=BuildStatus.PENDING.value,
            log_path=str(log_path),
        )
        session.add(build)
        session.flush()
        build.mark_running()
    return build


def _mark_failed(store: Store, build_id: int, error: Exception, log_path: Path) -> None:
    with store.session() as session:
        build = session.get(BuildRecord, build_id)
        if build is None:
            return
        build.log_path = str(log_path)
        build.mark_failed(
            error_type=getattr(error, "code", type(error).__name__),
            message=str(error),
        )


def _record_success(
    store: Store,
    build_id: int,
    stage2: ExecutionResult,
    artifacts: list[ArtifactInfo],
    published: dict[str, Path],
) -> BuildRecord:
    with store.session() as session:
        build = session.get(BuildRecord, build_id)
        if build is None:
            raise BuildNotFoundError(build_id)
        build.out_path = str(stage2.out_path)
        build.is_cache_hit = stage2.cache_hit
        if stage2.log_path is not None:
            build.log_path = str(stage2.log_path)
        for info in artifacts:
            session.add(
                Artifact(
                    build_id=build.id,
                    kind=info.kind,
                    relative_path=info.relative_path,
                    absolute_path=str(published[info.filename]),
                    filename=info.filename,
                    size_bytes=info.size_bytes,
                    sha256=info.sha256,
                )
            )
        build.mark_succeeded()
        session.flush()
        session.refresh(build, ["artifacts"])
    return build


def build_image(
    store: Store,
    manifest_path: str,
    root: Path | None = None,
    settings: Settings | None = None,
    overrides: IdentityOverrides | None = None,
    executor: BuildExecutor | None = None,
    *,
    snapshot: SourceSnapshot | None = None,
    vendor_store: VendorStore | None = None,
    client: httpx.Client | None = None,
) -> ImageBuildResult:
    """Build one firmware image, reusing cached layers.

    This is the main entry point for the build pipeline. It:
    1. Takes a filtered snapshot of the project (unless one is given)
    2. Vendors every locked dependency (unless a vendor store is given)
    3. Plans both derivations for the manifest
    4. Executes the dependency layer, then the image derivation
    5. Publishes artifacts and persists BuildRecord and Artifact rows

    Args:
        store: Content-addressed store.
        manifest_path: Manifest path relative to the project root.
        root: Project root (defaults to the current directory).
        settings: Application settings.
        overrides: Optional identity overrides.
        executor: Executor (a subprocess executor on store if omitted).
        snapshot: Pre-computed snapshot of root.
        vendor_store: Pre-computed vendor store for snapshot.
        client: HTTPX client used for vendoring.

    Returns:
        ImageBuildResult.

    Raises:
        SnapshotError: If the project tree cannot be read.
        UnresolvedDependencyError: If a dependency cannot be vendored.
        UnsupportedShimInvocation: If the shim table is misconfigured.
        PlanningError: If the manifest cannot be planned.
        ExecutionError: If a build step fails. The record is marked failed.
    """
    if settings is None:
        settings = get_settings()
    if executor is None:
        executor = default_executor(store, settings)

    if snapshot is None:
        snapshot = filter_source(
            root if root is not None else Path.cwd(), settings.excluded_names
        )
    if vendor_store is None:
        vendor_store = vendor(snapshot, store, settings, client=client)

    plan = prepare_plan(manifest_path, snapshot, vendor_store, settings, overrides)

    log_path = executor.log_path(plan.derivation)
    build = _create_build_record(store, plan, snapshot, log_path)
    logger.info("Created build record %d for %s", build.id, plan.identity)

    try:
        stage1 = executor.execute(plan.stage1)
        stage2 = executor.execute(plan.derivation)

        dest = publish_dir(settings.artifacts_dir, plan.identity)
        artifacts = discover_artifacts(stage2.out_path)
        published = publish_artifacts(stage2.out_path, artifacts, dest)
        for info in artifacts:
            info.relative_path = published[info.filename].relative_to(
                settings.artifacts_dir
            ).as_posix()

        manifest = generate_manifest(
            artifacts,
            plan.identity,
            build_id=build.id,
            stage1_key=stage1.key,
            stage2_key=stage2.key,
            manifest_path=plan.manifest_path,
        )
        write_manifest(manifest, dest / MANIFEST_NAME)

        build = _record_success(store, build.id, stage2, artifacts, published)
    except Exception as e:
        if isinstance(e, ExecutionError) and e.derivation == plan.stage1.label:
            log_path = executor.log_path(plan.stage1)
        _mark_failed(store, build.id, e, log_path)
        logger.error(
            "Build %d of %s failed: %s", build.id, plan.identity, type(e).__name__
        )
        raise

    logger.info(
        "Build %d of %s succeeded with %d artifacts (stage1 %s, stage2 %s)",
        build.id,
        plan.identity,
        len(artifacts),
        "cached" if stage1.cache_hit else "built",
        "cached" if stage2.cache_hit else "built",
    )
    return ImageBuildResult(
        build=build,
        identity=plan.identity,
        stage1=stage1,
        stage2=stage2,
        artifacts=artifacts,
        published=published,
    )


def _failure_entry(request: ImageRequest, error: BaseException) -> dict[str, Any]:
    return {
        "image": request.display,
        "manifest_path": request.manifest_path,
        "success": False,
        "error_code": getattr(error, "code", type(error).__name__),
        "error_category": getattr(error, "category", None),
        "error_message": str(error),
    }


def build_batch(
    store: Store,
    requests: list[ImageRequest],
    root: Path | None = None,
    settings: Settings | None = None,
    mode: BatchMode = BatchMode.BEST_EFFORT,
    executor: BuildExecutor | None = None,
    client: httpx.Client | None = None,
) -> BatchBuildResult:
    """Build several images from one snapshot and vendor store.

    Images run on a thread pool of ``max_concurrent_builds`` workers and
    share one executor, so targets with the same dependency set compile
    their dependency layer once.

    Args:
        store: Content-addressed store.
        requests: Images to build.
        root: Project root (defaults to the current directory).
        settings: Application settings.
        mode: fail-fast stops scheduling after the first failure;
            best-effort builds every image.
        executor: Shared executor.
        client: HTTPX client used for vendoring.

    Returns:
        BatchBuildResult with one entry per requested image.

    Raises:
        SnapshotError: If the project tree cannot be read.
        UnresolvedDependencyError: If vendoring fails.
    """
    if settings is None:
        settings = get_settings()
    if executor is None:
        executor = default_executor(store, settings)

    snapshot = filter_source(
        root if root is not None else Path.cwd(), settings.excluded_names
    )
    vendor_store = vendor(snapshot, store, settings, client=client)

    result = BatchBuildResult(total=len(requests))
    entries: dict[int, dict[str, Any]] = {}
    stop = threading.Event()

    def run(request: ImageRequest) -> ImageBuildResult | None:
        if stop.is_set():
            return None
        try:
            return build_image(
                store,
                request.manifest_path,
                settings=settings,
                overrides=request.overrides,
                executor=executor,
                snapshot=snapshot,
                vendor_store=vendor_store,
            )
        except Exception:
            if mode == BatchMode.FAIL_FAST:
                stop.set()
            raise

    logger.info(
        "Building %d images (%s, %d workers)",
        len(requests),
        mode.value,
        settings.max_concurrent_builds,
    )
    with ThreadPoolExecutor(max_workers=settings.max_concurrent_builds) as pool:
        futures = {
            pool.submit(run, request): index for index, request in enumerate(requests)
        }
        for future in as_completed(futures):
            index = futures[future]
            request = requests[index]
            if future.cancelled():
                continue
            error = future.exception()
            if error is None:
                image = future.result()
                if image is None:
                    continue
                entries[index] = {
                    "image": request.display,
                    "manifest_path": request.manifest_path,
                    "success": True,
                    **image.to_dict(),
                }
                result.succeeded += 1
                if image.cache_hit:
                    result.cache_hits += 1
                continue

            entries[index] = _failure_entry(request, error)
            result.failed += 1
            logger.error("Image %s failed: %s", request.display, error)
            if mode == BatchMode.FAIL_FAST and not result.stopped_early:
                result.stopped_early = True
                for other in futures:
                    other.cancel()

    for index, request in enumerate(requests):
        if index not in entries:
            result.skipped += 1
            entries[index] = {
                "image": request.display,
                "manifest_path": request.manifest_path,
                "success": False,
                "skipped": True,
            }
    result.results = [entries[i] for i in range(len(requests))]
    return result


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters, newest first.

    Args:
        session: Database session.
        name: Filter by image name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if name is not None:
        stmt = stmt.where(BuildRecord.name == name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_build_artifacts(session: Session, build_id: int) -> list[Artifact]:
    """Get artifacts for a build.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = get_build(session, build_id)
    return list(build.artifacts)


def list_artifacts(
    session: Session,
    build_id: int | None = None,
    kind: str | None = None,
    limit: int = 100,
) -> list[Artifact]:
    """List artifacts with optional filters, newest first."""
    stmt = select(Artifact)
    if build_id is not None:
        stmt = stmt.where(Artifact.build_id == build_id)
    if kind is not None:
        stmt = stmt.where(Artifact.kind == kind)
    stmt = stmt.order_by(Artifact.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BatchBuildResult",
    "BuildNotFoundError",
    "ImageBuildResult",
    "ImageRequest",
    "build_batch",
    "build_image",
    "default_executor",
    "get_build",
    "get_build_artifacts",
    "list_artifacts",
    "list_builds",
]
