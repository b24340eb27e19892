"""Pillow helpers for sniffing uploads and checking compositor output."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

from PIL import Image


def sniff_format(data: bytes) -> str | None:
    """Return Pillow's format name for *data* (``"PNG"``, ``"JPEG"``, ...).

    Only the header is parsed; ``None`` means the bytes are not an image
    Pillow recognizes.
    """
    try:
        with Image.open(BytesIO(data)) as image:
            return image.format
    except Exception:
        return None


def is_complete_png(data: bytes) -> bool:
    """Whether *data* is a PNG that passes Pillow's integrity check."""
    try:
        with Image.open(BytesIO(data)) as image:
            if image.format != "PNG":
                return False
            image.verify()
    except Exception:
        return False
    return True


def is_complete_png_file(path: Path) -> bool:
    try:
        return is_complete_png(path.read_bytes())
    except OSError:
        return False


def to_png(data: bytes) -> bytes:
    """Re-encode an image as PNG, keeping transparency.

    PNG input is returned unchanged.
    """
    with Image.open(BytesIO(data)) as image:
        if image.format == "PNG":
            return data
        image.load()
        mode = "RGBA" if image.mode in ("RGBA", "LA", "P", "PA") or "transparency" in image.info else "RGB"
        buffer = BytesIO()
        image.convert(mode).save(buffer, format="PNG")
    return buffer.getvalue()
