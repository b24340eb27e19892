"""Per-request temporary workspaces.

Each compose or preview request gets its own directory under
``config.temp_root``.  The external compositor is free to drop files with
unpredictable names inside it, so isolation between requests is what makes
output recovery safe: a stray PNG in a workspace can only belong to the
request that owns it.

Layout for request ``<id>``::

    <temp_root>/<id>/
        char-<id>.png          uploaded character
        char-<id>.backup.png   pristine copy, restored between fallback stages
        output-<id>.png        where the compositor is asked to write

Usage
-----
::

    workspaces = TempWorkspace(config.temp_root)
    ws = workspaces.allocate()
    ws.input_path.write_bytes(data)
    ...
    workspaces.release(ws)   # idempotent, never raises
"""

from __future__ import annotations

import logging
import re
import secrets
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9-]")


def generate_request_id() -> str:
    """Return a fresh opaque request identifier.

    Nanosecond timestamp (hex) followed by 64 random bits, so identifiers
    sort by creation time and collide only with negligible probability.
    """
    return f"{time.time_ns():x}-{secrets.token_hex(8)}"


def sanitize_request_id(request_id: str) -> str:
    """Strip everything but ASCII letters, digits and dashes."""
    return _UNSAFE_ID_CHARS.sub("", request_id)


@dataclass(frozen=True)
class Workspace:
    """An isolated request directory and its canonical file paths.

    Attributes:
        request_id: Opaque identifier, also the directory name.
        directory: Absolute path of the workspace directory.
        input_path: Where the uploaded character image is written.
        output_path: Where the compositor is asked to write its PNG.
        backup_path: Pristine copy of the input kept between stages.
        created_at: Epoch seconds at allocation.
    """

    request_id: str
    directory: Path
    input_path: Path
    output_path: Path
    backup_path: Path
    created_at: float

    def reserved_names(self) -> set[str]:
        """File names inside the workspace that are never compositor output."""
        return {self.input_path.name, self.backup_path.name}


class TempWorkspace:
    """Allocates and tears down request workspaces under a common root."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def allocate(self, request_id: str | None = None) -> Workspace:
        """Create a new workspace directory.

        Args:
            request_id: Optional caller-supplied identifier.  It is sanitized
                before use; a fresh one is generated when omitted or empty
                after sanitizing.

        Returns:
            The allocated :class:`Workspace`.

        Raises:
            FileExistsError: If a directory for this id already exists.  Two
                requests never share a workspace.
        """
        rid = sanitize_request_id(request_id) if request_id else ""
        if not rid:
            rid = generate_request_id()

        directory = self._root / rid
        # exist_ok=False: an existing directory means a collision, not reuse.
        directory.mkdir(parents=False, exist_ok=False)

        workspace = Workspace(
            request_id=rid,
            directory=directory,
            input_path=directory / f"char-{rid}.png",
            output_path=directory / f"output-{rid}.png",
            backup_path=directory / f"char-{rid}.backup.png",
            created_at=time.time(),
        )
        logger.debug("Allocated workspace %s", directory)
        return workspace

    def release(self, workspace: Workspace) -> bool:
        """Recursively delete a workspace directory.

        Safe to call more than once.  Failures are logged and swallowed so
        that cleanup can never turn into a request-level error.

        Args:
            workspace: The workspace to remove.

        Returns:
            ``True`` if the directory no longer exists afterwards.
        """
        directory = workspace.directory
        if not self._owns(directory):
            logger.warning("Refusing to delete %s: outside workspace root %s", directory, self._root)
            return False

        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", directory, exc)

        gone = not directory.exists()
        if gone:
            logger.debug("Released workspace %s", directory)
        return gone

    def sweep_stale(self, max_age_seconds: float, now: float | None = None) -> int:
        """Remove workspace directories left behind by an earlier process.

        Args:
            max_age_seconds: Directories whose modification time is older
                than this are removed.
            now: Reference time (defaults to :func:`time.time`).

        Returns:
            Number of directories removed.
        """
        now = time.time() if now is None else now
        removed = 0
        for entry in self._root.iterdir():
            if not entry.is_dir():
                continue
            try:
                age = now - entry.stat().st_mtime
            except OSError:
                continue
            if age <= max_age_seconds:
                continue
            try:
                shutil.rmtree(entry)
                removed += 1
            except OSError as exc:
                logger.warning("Failed to sweep stale workspace %s: %s", entry, exc)
        if removed:
            logger.info("Swept %d stale workspace(s) from %s", removed, self._root)
        return removed

    def _owns(self, directory: Path) -> bool:
        try:
            return directory.resolve().parent == self._root
        except OSError:
            return False
