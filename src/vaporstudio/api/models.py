"""Pydantic response models for the Vaporstudio API.

Request input arrives as multipart form fields and is validated by
:mod:`vaporstudio.api.validation`; the models here describe the JSON the API
returns, and feed FastAPI's OpenAPI documentation.

Models
------
ErrorBody
    Shape of every JSON error: ``{"error": ..., "details": ...}``.
AssetEntry / AssetListing
    Response of ``GET /api/assets``.
CanvasSize / ServiceConfig
    Response of ``GET /api/config``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    """JSON error payload.

    Attributes:
        error: Human-readable summary.
        details: Diagnostic detail, e.g. the offending field.
    """

    error: str
    details: str = ""


class AssetEntry(BaseModel):
    """A selectable background or overlay image.

    Attributes:
        id: Identifier passed back in compose requests (file stem).
        name: Display name, the id title-cased on dashes.
        thumbnail: URL of the image served by this API.
    """

    id: str
    name: str
    thumbnail: str


class AssetListing(BaseModel):
    """Available backgrounds and overlays."""

    backgrounds: list[AssetEntry] = Field(default_factory=list)
    overlays: list[AssetEntry] = Field(default_factory=list)


class CanvasSize(BaseModel):
    width: int
    height: int


class ServiceConfig(BaseModel):
    """Values a client UI needs to build its controls.

    Attributes:
        version: API version string.
        gradients: Accepted gradient names.
        default_background: Background used when none is selected.
        canvas: Size of the composed image in pixels.
        glitch_range: Inclusive ``[min, max]`` glitch intensity.
        glitch_seed_range: Inclusive ``[min, max]`` glitch seed.
        max_upload_bytes: Largest accepted character image.
    """

    version: str
    gradients: list[str]
    default_background: str
    canvas: CanvasSize
    glitch_range: tuple[float, float]
    glitch_seed_range: tuple[int, int]
    max_upload_bytes: int
