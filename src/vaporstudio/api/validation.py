"""Validation of compose and preview form input.

Turns raw multipart fields into the character image bytes plus a
:class:`~vaporstudio.core.composition.CompositionConfig`.  Everything here
runs before a workspace is allocated, so a rejected request never touches
the filesystem.

Checks performed:

1. A character image is present, either as ``character_base64`` (optionally
   a ``data:image/...;base64,`` URL) or as a ``character`` file upload.
2. Base64 text is well formed.
3. The decoded image is within ``max_upload_bytes``.
4. Pillow recognizes it as one of the allowed formats (PNG, JPEG, WebP).
   Non-PNG uploads are re-encoded as PNG.
5. Numeric fields are coerced, then range-checked; the gradient must be a
   known name.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from vaporstudio.core.composition import CompositionConfig
from vaporstudio.core.errors import InputValidationError
from vaporstudio.core.imaging import sniff_format, to_png

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = frozenset({"PNG", "JPEG", "WEBP"})

IMAGE_TEXT_FIELD = "character_base64"
IMAGE_FILE_FIELD = "character"

COMPOSE_FIELDS = (
    "background",
    "overlay",
    "overlay_x",
    "overlay_y",
    "overlay_scale",
    "overlay_rotate",
    "overlay_above_character",
    "character_x",
    "character_y",
    "character_scale",
    "character_rotate",
    "glitch",
    "glitch_seed",
    "gradient",
    "crt",
)
PREVIEW_FIELDS = ("glitch", "glitch_seed", "gradient")

_DATA_URL_PREFIX = re.compile(r"^data:image/[A-Za-z0-9.+-]+;base64,")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ValidatedRequest:
    """A request that passed validation.

    Attributes:
        image: Character image, PNG encoded.
        config: Composition parameters, not yet bound to a workspace.
    """

    image: bytes
    config: CompositionConfig


class InputValidator:
    """Validates compose and preview form fields.

    Args:
        max_upload_bytes: Ceiling on the decoded image size.
        allowed_formats: Pillow format names accepted for the character.
    """

    def __init__(
        self,
        max_upload_bytes: int,
        allowed_formats: frozenset[str] = ALLOWED_FORMATS,
    ) -> None:
        self.max_upload_bytes = max_upload_bytes
        self.allowed_formats = allowed_formats

    def parse_compose(self, fields: Mapping[str, Any]) -> ValidatedRequest:
        """Validate a full composition request.

        Raises:
            InputValidationError: Naming the first offending field.
        """
        image = self.decode_image(fields)
        config = self._build_config(fields, COMPOSE_FIELDS)
        return ValidatedRequest(image=image, config=config)

    def parse_preview(self, fields: Mapping[str, Any]) -> ValidatedRequest:
        """Validate a character-only effects preview request.

        Raises:
            InputValidationError: Naming the first offending field.
        """
        image = self.decode_image(fields)
        config = self._build_config(fields, PREVIEW_FIELDS, character_only=True)
        return ValidatedRequest(image=image, config=config)

    def decode_image(self, fields: Mapping[str, Any]) -> bytes:
        """Extract, decode and sniff the character image.

        Args:
            fields: Form fields.  An uploaded file must already have been
                read into ``bytes`` under ``character``.

        Returns:
            The image as PNG bytes.

        Raises:
            InputValidationError: If the image is missing, malformed,
                too large, or of a disallowed type.
        """
        raw = fields.get(IMAGE_FILE_FIELD)
        if isinstance(raw, (bytes, bytearray)) and raw:
            field = IMAGE_FILE_FIELD
            data = bytes(raw)
        else:
            field = IMAGE_TEXT_FIELD
            data = self._decode_base64(fields.get(IMAGE_TEXT_FIELD))

        if len(data) > self.max_upload_bytes:
            raise InputValidationError(
                field, f"image is too large ({len(data)} bytes, limit {self.max_upload_bytes})"
            )

        image_format = sniff_format(data)
        if image_format not in self.allowed_formats:
            raise InputValidationError(field, "invalid image type (expected PNG, JPEG or WebP)")

        if image_format != "PNG":
            try:
                data = to_png(data)
            except OSError as exc:
                raise InputValidationError(field, f"image could not be decoded: {exc}") from exc
        return data

    def _decode_base64(self, value: Any) -> bytes:
        if not isinstance(value, str) or not value.strip():
            raise InputValidationError(IMAGE_TEXT_FIELD, "no character image data provided")

        text = _WHITESPACE.sub("", _DATA_URL_PREFIX.sub("", value.strip(), count=1))

        # Reject obviously oversized payloads before decoding them.
        if len(text) * 3 // 4 > self.max_upload_bytes + 2:
            raise InputValidationError(IMAGE_TEXT_FIELD, "image is too large")

        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InputValidationError(IMAGE_TEXT_FIELD, "invalid base64 image data") from exc
        if not data:
            raise InputValidationError(IMAGE_TEXT_FIELD, "no character image data provided")
        return data

    @staticmethod
    def _build_config(
        fields: Mapping[str, Any],
        names: tuple[str, ...],
        *,
        character_only: bool = False,
    ) -> CompositionConfig:
        values = {name: fields.get(name) for name in names if name in fields}
        if character_only:
            values["character_only"] = True
        try:
            return CompositionConfig.model_validate(values)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = str(first["loc"][0]) if first.get("loc") else "request"
            logger.debug("Rejected field %s: %s", field, first.get("msg"))
            raise InputValidationError(field, first.get("msg", "invalid value")) from exc
