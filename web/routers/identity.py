"""Image identity endpoint."""

from fastapi import APIRouter, Depends, Query

from hubris_imagegen.builds.identity import (
    IdentityOverrides,
    parse_manifest_identity,
)
from hubris_imagegen.config import Settings
from hubris_imagegen.errors import PlanningError
from web.deps import configuration_error, get_app_settings

router = APIRouter()


@router.get("")
def get_identity(
    manifest: str = Query(..., description="Manifest path, e.g. app/x/app.toml"),
    name: str | None = Query(None, description="Image name override"),
    version: str | None = Query(None, description="Image version override"),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, str]:
    """Derive the image identity of a manifest path.

    Raises:
        HTTPException: 422 if the path or an override is invalid.
    """
    overrides = None
    if name is not None or version is not None:
        overrides = IdentityOverrides(name=name, version=version)
    try:
        identity = parse_manifest_identity(
            manifest,
            manifest_root=settings.manifest_root,
            default_version=settings.default_version,
            overrides=overrides,
        )
    except PlanningError as e:
        raise configuration_error(e) from None
    return {"name": identity.name, "version": identity.version}
