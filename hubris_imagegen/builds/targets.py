"""Image set files for batch builds.

An image set names the images a project ships:

    default: demo-stm32f4-discovery
    images:
      demo-stm32f4-discovery:
        manifest: app/demo-stm32f4-discovery/app.toml
      demo-stm32h7-nucleo-h743:
        manifest: app/demo-stm32h7-nucleo/app-h743.toml
        version: 1.0.3

Image keys only label results; the image identity still comes from the
manifest path unless ``name`` is given.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from hubris_imagegen.builds.identity import SEGMENT_PATTERN, IdentityOverrides
from hubris_imagegen.builds.service import ImageRequest
from hubris_imagegen.errors import PlanningError


class ImageSpecSchema(BaseModel):
    """Schema for one image entry.

    Attributes:
        manifest: Manifest path relative to the project root.
        name: Optional identity name override.
        version: Optional identity version override.
    """

    model_config = ConfigDict(extra="forbid")

    manifest: str = Field(description="Path to app.toml relative to the project root")
    name: str | None = Field(default=None, description="Image name override")
    version: str | None = Field(default=None, description="Image version override")

    @property
    def overrides(self) -> IdentityOverrides | None:
        if self.name is None and self.version is None:
            return None
        return IdentityOverrides(name=self.name, version=self.version)


class ImageSetSchema(BaseModel):
    """Schema for an image set file."""

    model_config = ConfigDict(extra="forbid")

    default: str | None = Field(default=None, description="Image built by default")
    images: dict[str, ImageSpecSchema] = Field(
        description="Images keyed by a short label"
    )

    @model_validator(mode="after")
    def validate_images(self) -> ImageSetSchema:
        """Validate image keys and that default names an image."""
        if not self.images:
            raise ValueError("images must not be empty")
        for key in self.images:
            if not SEGMENT_PATTERN.match(key):
                raise ValueError(f"invalid image key {key!r}")
        if self.default is not None and self.default not in self.images:
            raise ValueError(f"default image {self.default!r} is not in images")
        return self

    def requests(self, selected: list[str] | None = None) -> list[ImageRequest]:
        """Turn images into build requests.

        Args:
            selected: Image keys to build; all images when empty.

        Returns:
            Requests in file order (or selection order).

        Raises:
            PlanningError: If a selected key is unknown.
        """
        keys = selected or list(self.images)
        unknown = [k for k in keys if k not in self.images]
        if unknown:
            raise PlanningError(
                f"unknown image(s): {', '.join(unknown)}", code="unknown_image"
            )
        return [
            ImageRequest(
                manifest_path=self.images[key].manifest,
                overrides=self.images[key].overrides,
                label=key,
            )
            for key in keys
        ]

    def default_request(self) -> ImageRequest:
        """Request for the default image.

        Raises:
            PlanningError: If the set declares no default.
        """
        if self.default is None:
            raise PlanningError("image set has no default image", code="no_default")
        return self.requests([self.default])[0]


def parse_image_set(data: dict[str, Any], source: str = "<data>") -> ImageSetSchema:
    """Validate image set data.

    Raises:
        PlanningError: If the data does not match the schema.
    """
    try:
        return ImageSetSchema.model_validate(data)
    except ValidationError as e:
        raise PlanningError(
            f"invalid image set {source}: {e}", code="image_set_invalid"
        ) from e


def load_image_set(path: Path) -> ImageSetSchema:
    """Load an image set from a YAML file.

    Raises:
        PlanningError: If the file is missing, not YAML or invalid.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise PlanningError(
            f"cannot read image set {path}: {e.strerror}", code="image_set_missing"
        ) from e
    except yaml.YAMLError as e:
        raise PlanningError(
            f"invalid YAML in {path}: {e}", code="image_set_invalid"
        ) from e

    if not isinstance(data, dict):
        raise PlanningError(
            f"expected a YAML mapping in {path}, got {type(data).__name__}",
            code="image_set_invalid",
        )
    return parse_image_set(data, source=str(path))


__all__ = [
    "ImageSetSchema",
    "ImageSpecSchema",
    "load_image_set",
    "parse_image_set",
]
