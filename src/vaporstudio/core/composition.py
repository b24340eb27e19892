"""Composition parameters handed to the external compositor.

:class:`CompositionConfig` is built once per request from form input.  Form
transports deliver every value as a string, while the compositor's argument
types are strict, so numeric and boolean fields are coerced *before*
validation:

- numbers: ``"12.5"`` -> ``12.5``; ``""``, ``None``, ``"abc"``, ``"nan"`` and
  infinities fall back to the field default, so ``NaN`` never reaches the
  compositor.
- booleans: ``"true"``/``"false"`` (and ``1/0``, ``yes/no``, ``on/off``)
  become real ``bool`` values; anything else is the field default.

Range checks (glitch intensity, glitch seed) and gradient membership are then
enforced by ordinary pydantic validation.

Character-only mode
-------------------
When ``character_only`` is set, only the character's own effects are
applied.  Background, overlay, transform and CRT values are ignored: they are
left out of :meth:`CompositionConfig.composer_arguments` entirely.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

if TYPE_CHECKING:
    from vaporstudio.core.workspace import Workspace

GRADIENTS: tuple[str, ...] = (
    "none",
    "autumn",
    "bone",
    "jet",
    "winter",
    "rainbow",
    "ocean",
    "summer",
    "spring",
    "cool",
    "hsv",
    "pink",
    "hot",
    "parula",
    "magma",
    "inferno",
    "plasma",
    "viridis",
    "cividis",
    "deepgreen",
)

DEFAULT_BACKGROUND = "default"
NO_OVERLAY = "none"

NUMERIC_FIELDS = (
    "overlay_x",
    "overlay_y",
    "overlay_scale",
    "overlay_rotate",
    "character_x",
    "character_y",
    "character_scale",
    "character_rotate",
    "glitch",
    "glitch_seed",
)
BOOLEAN_FIELDS = ("overlay_above_character", "crt", "character_only")

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})


def coerce_number(value: Any, default: float) -> float:
    """Parse *value* to a finite float, or return *default*.

    Args:
        value: Raw value, typically a form string.
        default: Fallback for missing, empty, non-numeric or non-finite input.

    Returns:
        A finite ``float``.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            return default
    return number if math.isfinite(number) else default


def coerce_bool(value: Any, default: bool = False) -> bool:
    """Normalize a boolean-like value.

    Args:
        value: ``bool``, number, or string such as ``"true"``/``"false"``.
        default: Returned when *value* is missing or unrecognized.

    Returns:
        The normalized ``bool``.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return default


class CompositionConfig(BaseModel):
    """Validated, fully-populated parameters for one composition.

    Attributes:
        input_path: Character image on disk.  Unset until bound to a workspace.
        output_path: Where the compositor must write the PNG.
        background: Background asset id.
        overlay: Decorative overlay asset id, or ``"none"``.
        overlay_x / overlay_y: Overlay centre in percent of the canvas.
        overlay_scale: Overlay scale in percent.
        overlay_rotate: Overlay rotation in degrees.
        overlay_above_character: Draw the overlay over the character.
        character_x / character_y: Character centre in percent of the canvas.
        character_scale: Character scale in percent.
        character_rotate: Character rotation in degrees.
        glitch: Glitch intensity, 0.1 to 10.
        glitch_seed: Glitch seed, 0 to 100.
        gradient: Gradient map name from :data:`GRADIENTS`.
        crt: Apply the CRT scanline overlay.
        character_only: Skip background and overlay compositing.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    input_path: Path | None = None
    output_path: Path | None = None

    background: str = Field(default=DEFAULT_BACKGROUND, pattern=r"^[A-Za-z0-9_-]+$")
    overlay: str = Field(default=NO_OVERLAY, pattern=r"^[A-Za-z0-9_-]+$")
    overlay_x: float = 0.0
    overlay_y: float = 0.0
    overlay_scale: float = 100.0
    overlay_rotate: float = 0.0
    overlay_above_character: bool = False

    character_x: float = 0.0
    character_y: float = 0.0
    character_scale: float = 100.0
    character_rotate: float = 0.0

    glitch: float = Field(default=0.1, ge=0.1, le=10)
    glitch_seed: int = Field(default=0, ge=0, le=100)
    gradient: str = "none"
    crt: bool = False
    character_only: bool = False

    # -- Coercion -----------------------------------------------------------

    @field_validator(*NUMERIC_FIELDS, mode="before")
    @classmethod
    def _coerce_numeric(cls, value: Any, info: ValidationInfo) -> float | int:
        default = cls.model_fields[info.field_name].default
        number = coerce_number(value, default)
        if info.field_name == "glitch_seed":
            return int(number)
        return number

    @field_validator(*BOOLEAN_FIELDS, mode="before")
    @classmethod
    def _coerce_boolean(cls, value: Any, info: ValidationInfo) -> bool:
        return coerce_bool(value, cls.model_fields[info.field_name].default)

    @field_validator("background", "overlay", "gradient", mode="before")
    @classmethod
    def _default_blank_selector(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value.strip() if isinstance(value, str) else value

    @field_validator("gradient")
    @classmethod
    def _known_gradient(cls, value: str) -> str:
        name = value.lower()
        if name not in GRADIENTS:
            raise ValueError(f"unknown gradient '{value}'")
        return name

    # -- Derived configurations ---------------------------------------------

    def bind(self, workspace: Workspace) -> CompositionConfig:
        """Return a copy pointing at *workspace*'s input and output paths."""
        return self.model_copy(
            update={"input_path": workspace.input_path, "output_path": workspace.output_path}
        )

    def with_default_background(self, background: str = DEFAULT_BACKGROUND) -> CompositionConfig:
        """Return a copy with the background forced to *background*."""
        return self.model_copy(update={"background": background})

    def character_only_variant(self) -> CompositionConfig:
        """Return the minimal configuration: paths and character effects only."""
        return CompositionConfig(
            input_path=self.input_path,
            output_path=self.output_path,
            glitch=self.glitch,
            glitch_seed=self.glitch_seed,
            gradient=self.gradient,
            character_only=True,
        )

    def composer_arguments(self) -> dict[str, Any]:
        """Arguments for the compositor, honouring character-only mode.

        Raises:
            ValueError: If the config has not been bound to a workspace.
        """
        if self.input_path is None or self.output_path is None:
            raise ValueError("CompositionConfig is not bound to a workspace")

        args: dict[str, Any] = {
            "character_path": str(self.input_path),
            "output_path": str(self.output_path),
            "glitch": self.glitch,
            "glitch_seed": self.glitch_seed,
            "gradient": self.gradient,
            "character_only": self.character_only,
        }
        if self.character_only:
            return args

        args.update(
            background=self.background,
            overlay=self.overlay,
            overlay_x=self.overlay_x,
            overlay_y=self.overlay_y,
            overlay_scale=self.overlay_scale,
            overlay_rotate=self.overlay_rotate,
            overlay_above_character=self.overlay_above_character,
            character_x=self.character_x,
            character_y=self.character_y,
            character_scale=self.character_scale,
            character_rotate=self.character_rotate,
            crt=self.crt,
        )
        return args
