"""Build history endpoints.

- GET /builds - List builds
- GET /builds/{id} - Get build by ID
- GET /builds/{id}/artifacts - Get artifacts for a build
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from hubris_imagegen.builds.models import Artifact, BuildRecord
from hubris_imagegen.builds.service import (
    BuildNotFoundError,
    get_build,
    get_build_artifacts,
    list_builds,
)
from hubris_imagegen.types import BuildStatus
from web.deps import get_db

router = APIRouter()


def _build_to_dict(build: BuildRecord) -> dict[str, Any]:
    """Convert a build record to a dictionary."""
    return {
        "id": build.id,
        "name": build.name,
        "version": build.version,
        "manifest_path": build.manifest_path,
        "status": build.status,
        "stage1_key": build.stage1_key,
        "stage2_key": build.stage2_key,
        "is_cache_hit": build.is_cache_hit,
        "requested_at": build.requested_at.isoformat() if build.requested_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
        "log_path": build.log_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "artifact_count": len(build.artifacts),
    }


def _artifact_to_dict(artifact: Artifact) -> dict[str, Any]:
    """Convert an artifact to a dictionary."""
    return {
        "id": artifact.id,
        "build_id": artifact.build_id,
        "kind": artifact.kind,
        "filename": artifact.filename,
        "relative_path": artifact.relative_path,
        "absolute_path": artifact.absolute_path,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
    }


def _not_found(build_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "build_not_found",
            "message": f"Build not found: {build_id}",
        },
    )


@router.get("")
def list_builds_endpoint(
    name: str | None = Query(None, description="Filter by image name"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records, newest first."""
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. "
                    "Valid values: pending, running, succeeded, failed",
                },
            ) from None

    builds = list_builds(db, name=name, status=status_filter, limit=limit)
    return [_build_to_dict(b) for b in builds]


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID.

    Raises:
        HTTPException: If build not found.
    """
    try:
        build = get_build(db, build_id)
        return _build_to_dict(build)
    except BuildNotFoundError:
        raise _not_found(build_id) from None


@router.get("/{build_id}/artifacts")
def get_build_artifacts_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get artifacts for a build.

    Raises:
        HTTPException: If build not found.
    """
    try:
        artifacts = get_build_artifacts(db, build_id)
        return [_artifact_to_dict(a) for a in artifacts]
    except BuildNotFoundError:
        raise _not_found(build_id) from None
