"""Configuration models for KeySeries.

Pydantic v2 models with sensible defaults, so everything works without a
config file.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator


class LimitsConfig(BaseModel):
    """Caps enforced by the custom type registry and annotation manager."""

    max_custom_types: int = Field(20, ge=1, description="Maximum number of custom types")
    max_annotations_per_image: int = Field(
        100, ge=1, description="Maximum custom annotations on one image"
    )
    min_region_size: float = Field(10, ge=0, description="Minimum region width/height in pixels")


class DragConfig(BaseModel):
    """Configuration for drag-reposition of existing annotations."""

    move_threshold: float = Field(
        1.0, ge=0, description="Image-space distance a drag must exceed to count as a move"
    )


class PreviewConfig(BaseModel):
    """Configuration for the reference preview engine."""

    base_crop_size: int = Field(200, gt=0, description="Crop side length at zoom 1.0")
    zoom_level: float = Field(2.0, description="Initial zoom factor")
    min_zoom: float = Field(1.0, gt=0)
    max_zoom: float = Field(10.0, gt=0)
    viewport_width: int = Field(200, gt=0, description="Rendered preview width")
    viewport_height: int = Field(200, gt=0, description="Rendered preview height")

    # Cache of previous-image data (image handle + annotations)
    cache_ttl_seconds: float = Field(300.0, description="Entry lifetime; <= 0 disables expiry")
    cache_max_entries: int = Field(16, ge=1)

    # Marker colours (hex)
    target_color: str = "#ffeb3b"
    target_ring_color: str = "#ff9800"
    dragged_color: str = "#ff9800"
    directed_neighbor_color: str = "#4CAF50"
    neighbor_color: str = "#6666ff"
    arrow_color: str = "#10b981"

    @model_validator(mode="after")
    def _check_zoom_range(self) -> PreviewConfig:
        if self.min_zoom > self.max_zoom:
            raise ValueError("min_zoom must not exceed max_zoom")
        return self

    def clamp_zoom(self, zoom: float) -> float:
        return max(self.min_zoom, min(self.max_zoom, zoom))


class StorageConfig(BaseModel):
    """Configuration for the JSON annotation store."""

    custom_types_filename: str = "custom_types.json"
    indent: int | None = Field(2, description="JSON indent; None writes compact files")


class KeySeriesConfig(BaseModel):
    """Top-level KeySeries configuration."""

    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    drag: DragConfig = Field(default_factory=DragConfig)
    preview: PreviewConfig = Field(default_factory=PreviewConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> KeySeriesConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    @classmethod
    def default(cls) -> KeySeriesConfig:
        """Return configuration with all defaults."""
        return cls()
