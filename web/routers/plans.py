"""Planning endpoint.

POST /plans plans an image against a source root without running
anything. Dependencies are vendored from the local store only.
"""

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from hubris_imagegen.builds.identity import IdentityOverrides
from hubris_imagegen.builds.planner import prepare_plan
from hubris_imagegen.config import Settings
from hubris_imagegen.errors import HermeticBuildError
from hubris_imagegen.source.snapshot import filter_source
from hubris_imagegen.store import Store
from hubris_imagegen.vendor.service import vendor
from web.deps import configuration_error, get_app_settings, get_store

router = APIRouter()


class PlanRequest(BaseModel):
    """Request body for planning an image."""

    model_config = ConfigDict(extra="forbid")

    root: str = Field(description="Project root on the server")
    manifest: str = Field(description="Manifest path relative to root")
    name: str | None = None
    version: str | None = None


@router.post("")
def create_plan(
    request: PlanRequest,
    settings: Settings = Depends(get_app_settings),
    store: Store = Depends(get_store),
) -> dict[str, Any]:
    """Plan an image build.

    Returns:
        Plan description with both derivation keys.

    Raises:
        HTTPException: 422 with {code, message} on configuration errors.
    """
    offline = settings.model_copy(update={"offline": True})
    overrides = None
    if request.name is not None or request.version is not None:
        overrides = IdentityOverrides(name=request.name, version=request.version)

    try:
        snapshot = filter_source(Path(request.root), offline.excluded_names)
        vendor_store = vendor(snapshot, store, offline)
        plan = prepare_plan(request.manifest, snapshot, vendor_store, offline, overrides)
    except HermeticBuildError as e:
        raise configuration_error(e) from None

    description = plan.describe()
    description["source_digest"] = snapshot.digest
    description["vendor_digest"] = vendor_store.digest
    return description
