"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from hubris_imagegen.config import Settings
from web.deps import get_app_settings

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    return settings.model_dump(mode="json")
