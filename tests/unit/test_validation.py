"""Tests for vaporstudio.api.validation -- form input checks.

Tests cover:
- Image extraction from base64 text, data URLs and file uploads
- Size and type checks, with JPEG/WebP re-encoding to PNG
- Numeric coercion and range checks surfaced with the field name
- The reduced field set accepted by previews
"""

from __future__ import annotations

import base64
from io import BytesIO

import pytest
from PIL import Image

from vaporstudio.api.validation import InputValidator, ValidatedRequest
from vaporstudio.core.errors import InputValidationError
from vaporstudio.core.imaging import sniff_format


def _encode(image: Image.Image, fmt: str) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def validator() -> InputValidator:
    return InputValidator(max_upload_bytes=5 * 1024 * 1024)


class TestImageDecoding:
    """Test extraction of the character image."""

    def test_plain_base64(self, validator, character_png, character_b64):
        assert validator.decode_image({"character_base64": character_b64}) == character_png

    def test_data_url(self, validator, character_png, character_b64):
        fields = {"character_base64": f"data:image/png;base64,{character_b64}"}
        assert validator.decode_image(fields) == character_png

    def test_whitespace_in_base64_is_ignored(self, validator, character_png, character_b64):
        wrapped = "\n".join(character_b64[i : i + 60] for i in range(0, len(character_b64), 60))
        assert validator.decode_image({"character_base64": wrapped}) == character_png

    def test_file_upload(self, validator, character_png):
        assert validator.decode_image({"character": character_png}) == character_png

    def test_file_upload_takes_priority(self, validator, character_png):
        fields = {"character": character_png, "character_base64": "!!!"}
        assert validator.decode_image(fields) == character_png

    def test_empty_file_falls_back_to_base64(self, validator, character_png, character_b64):
        fields = {"character": b"", "character_base64": character_b64}
        assert validator.decode_image(fields) == character_png

    @pytest.mark.parametrize("fields", [{}, {"character_base64": ""}, {"character_base64": "   "}])
    def test_missing_image(self, validator, fields):
        with pytest.raises(InputValidationError) as info:
            validator.decode_image(fields)
        assert info.value.field == "character_base64"
        assert "no character image" in info.value.reason

    def test_invalid_base64(self, validator):
        with pytest.raises(InputValidationError, match="invalid base64"):
            validator.decode_image({"character_base64": "not*base64*at*all"})

    def test_too_large_upload(self, character_png):
        validator = InputValidator(max_upload_bytes=len(character_png) - 1)
        with pytest.raises(InputValidationError, match="too large") as info:
            validator.decode_image({"character": character_png})
        assert info.value.field == "character"

    def test_too_large_base64_rejected_before_decoding(self):
        validator = InputValidator(max_upload_bytes=100)
        payload = base64.b64encode(b"\0" * 1000).decode()
        with pytest.raises(InputValidationError, match="too large"):
            validator.decode_image({"character_base64": payload})

    def test_not_an_image(self, validator):
        payload = base64.b64encode(b"hello, world").decode()
        with pytest.raises(InputValidationError, match="invalid image type"):
            validator.decode_image({"character_base64": payload})

    def test_disallowed_format(self, validator):
        gif = _encode(Image.new("RGB", (8, 8), "red"), "GIF")
        with pytest.raises(InputValidationError, match="invalid image type"):
            validator.decode_image({"character": gif})

    def test_jpeg_is_converted_to_png(self, validator):
        jpeg = _encode(Image.new("RGB", (20, 10), "blue"), "JPEG")
        data = validator.decode_image({"character": jpeg})

        assert sniff_format(data) == "PNG"
        with Image.open(BytesIO(data)) as image:
            assert image.size == (20, 10)

    def test_webp_keeps_transparency(self, validator):
        webp = _encode(Image.new("RGBA", (16, 16), (255, 0, 0, 0)), "WEBP")
        data = validator.decode_image({"character": webp})

        with Image.open(BytesIO(data)) as image:
            assert image.format == "PNG"
            assert image.mode == "RGBA"


class TestComposeFields:
    """Test conversion of compose form fields."""

    def test_defaults(self, validator, character_b64):
        request = validator.parse_compose({"character_base64": character_b64})

        assert isinstance(request, ValidatedRequest)
        assert request.config.background == "default"
        assert request.config.overlay == "none"
        assert request.config.glitch == 0.1
        assert request.config.character_only is False
        assert request.config.input_path is None

    def test_string_fields_are_coerced(self, validator, character_b64):
        request = validator.parse_compose(
            {
                "character_base64": character_b64,
                "background": "neon-city",
                "character_x": "12.5",
                "character_scale": "",
                "overlay_rotate": "NaN",
                "glitch": "3",
                "glitch_seed": "42",
                "gradient": "Magma",
                "crt": "true",
                "overlay_above_character": "false",
            }
        )
        config = request.config

        assert config.background == "neon-city"
        assert config.character_x == 12.5
        assert config.character_scale == 100.0
        assert config.overlay_rotate == 0.0
        assert config.glitch == 3.0
        assert config.glitch_seed == 42
        assert config.gradient == "magma"
        assert config.crt is True
        assert config.overlay_above_character is False

    def test_character_only_cannot_be_requested_on_compose(self, validator, character_b64):
        request = validator.parse_compose({"character_base64": character_b64, "character_only": "true"})
        assert request.config.character_only is False

    @pytest.mark.parametrize(
        "field,value",
        [
            ("glitch", "11"),
            ("glitch", "0"),
            ("glitch_seed", "101"),
            ("glitch_seed", "-1"),
            ("gradient", "sepia"),
            ("background", "../etc/passwd"),
            ("overlay", "a b"),
        ],
    )
    def test_invalid_field_is_named(self, validator, character_b64, field, value):
        with pytest.raises(InputValidationError) as info:
            validator.parse_compose({"character_base64": character_b64, field: value})
        assert info.value.field == field
        assert str(info.value).startswith(f"{field}: ")

    def test_image_checked_before_fields(self, validator):
        with pytest.raises(InputValidationError) as info:
            validator.parse_compose({"glitch": "99"})
        assert info.value.field == "character_base64"


class TestPreviewFields:
    """Test the reduced preview field set."""

    def test_preview_is_character_only(self, validator, character_b64):
        request = validator.parse_preview(
            {"character_base64": character_b64, "glitch": "2", "gradient": "jet"}
        )
        assert request.config.character_only is True
        assert request.config.glitch == 2.0
        assert request.config.gradient == "jet"

    def test_preview_ignores_layout_fields(self, validator, character_b64):
        request = validator.parse_preview(
            {"character_base64": character_b64, "background": "neon-city", "crt": "true"}
        )
        assert request.config.background == "default"
        assert request.config.crt is False

    def test_preview_still_range_checks(self, validator, character_b64):
        with pytest.raises(InputValidationError) as info:
            validator.parse_preview({"character_base64": character_b64, "glitch_seed": "500"})
        assert info.value.field == "glitch_seed"
