"""Background and overlay asset listing.

Assets are plain PNG files in two directories.  The listing is rebuilt from
disk on every call, so files dropped into or removed from those directories
show up without a restart.  Anything that is not a regular ``.png`` file is
ignored.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vaporstudio.api.models import AssetEntry

logger = logging.getLogger(__name__)


def display_name(asset_id: str) -> str:
    """Turn ``"neon-city"`` into ``"Neon City"``."""
    return " ".join(word[:1].upper() + word[1:] for word in asset_id.split("-"))


def list_assets(directory: Path, url_prefix: str) -> list[AssetEntry]:
    """Enumerate the PNG assets in *directory*.

    Args:
        directory: Folder to scan.  A missing folder yields an empty list.
        url_prefix: URL path under which the folder is served, e.g.
            ``"/assets/backgrounds"``.

    Returns:
        Entries sorted by id.
    """
    if not directory.is_dir():
        logger.warning("Asset directory %s does not exist", directory)
        return []

    entries: list[AssetEntry] = []
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() != ".png" or not path.is_file():
            continue
        entries.append(
            AssetEntry(
                id=path.stem,
                name=display_name(path.stem),
                thumbnail=f"{url_prefix.rstrip('/')}/{path.name}",
            )
        )
    return entries
