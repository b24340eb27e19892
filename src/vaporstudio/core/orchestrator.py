"""Staged composition with fallbacks and output recovery.

:class:`CompositionOrchestrator` drives the external compositor through a
linear fallback ladder:

1. ``full`` -- the validated configuration exactly as given.
2. ``default_background`` -- same configuration with the background forced
   to the default.  A missing or corrupt background asset is the most common
   recoverable failure.
3. ``character_only`` -- input, output and character effects only.  This is
   the smallest composition the compositor reliably performs.

Stages run strictly in order, one at a time; they share the workspace files,
so running them concurrently would race.  A stage that is identical to an
earlier one is skipped (a request already on the default background goes
straight from ``full`` to ``character_only``).  If every stage fails the
request fails with :class:`TerminalCompositionError`.

The compositor returning without error does not mean the file is where it
was asked to be.  After a successful stage the orchestrator checks the output
path and, if nothing is there, scans the workspace for the PNG the compositor
actually wrote.  That scan is only meaningful because each request owns its
workspace directory exclusively.

Before the first stage the uploaded input is copied aside.  A failed attempt
may delete or rewrite the input, so it is restored from that copy before each
retry.

A stage that exceeds ``stage_timeout`` has failed, but its worker thread
cannot be killed.  The orchestrator waits up to ``stage_grace`` seconds for it
to return before starting the next stage; if it is still running, the ladder
ends with :class:`TerminalCompositionError` instead of letting two stages
write into the same workspace.  Filesystem errors on the workspace are raised
as :class:`TerminalCompositionError` too.
"""

from __future__ import annotations

import asyncio
import filecmp
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from vaporstudio.core.composer import Composer
from vaporstudio.core.composition import DEFAULT_BACKGROUND, CompositionConfig
from vaporstudio.core.errors import (
    CompositionStageError,
    OutputRecoveryError,
    StageStillRunningError,
    TerminalCompositionError,
)
from vaporstudio.core.imaging import is_complete_png, is_complete_png_file
from vaporstudio.core.workspace import Workspace

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

STAGE_FULL = "full"
STAGE_DEFAULT_BACKGROUND = "default_background"
STAGE_CHARACTER_ONLY = "character_only"
# Preview only: every stage failed and the untouched character was returned.
STAGE_ORIGINAL = "original"

# File name fragments the compositor uses for its results.
OUTPUT_MARKERS = ("output", "char_")


@dataclass(frozen=True)
class CompositionResult:
    """Bytes of the final PNG and how they were obtained.

    Attributes:
        data: The PNG bytes.
        stage: Name of the stage that produced them.
        recovered: ``True`` if the file was found by scanning the workspace
            rather than at the expected output path.
    """

    data: bytes
    stage: str
    recovered: bool = False


def find_output_candidate(workspace: Workspace) -> Path | None:
    """Locate a misplaced compositor output inside *workspace*.

    The input, its backup and the (missing) expected output are ignored.
    Remaining ``.png`` files are ranked with names containing an output
    marker first, then by most recent modification time.  The first
    candidate that is a complete PNG wins.

    Args:
        workspace: The request's workspace.

    Returns:
        Path of the best candidate, or ``None``.
    """
    excluded = workspace.reserved_names() | {workspace.output_path.name}
    ranked: list[tuple[bool, int, Path]] = []

    for entry in workspace.directory.iterdir():
        if entry.name in excluded or entry.suffix.lower() != ".png" or not entry.is_file():
            continue
        try:
            mtime = entry.stat().st_mtime_ns
        except OSError:
            continue
        marked = any(marker in entry.name.lower() for marker in OUTPUT_MARKERS)
        ranked.append((marked, mtime, entry))

    ranked.sort(key=lambda item: (item[0], item[1]), reverse=True)
    for _, _, entry in ranked:
        if is_complete_png_file(entry):
            return entry
    return None


class CompositionOrchestrator:
    """Runs the fallback ladder against a :class:`Composer`.

    Args:
        composer: The compositor implementation.
        default_background: Background forced by the second stage.
        stage_timeout: Seconds allowed per stage.  A timeout counts as that
            stage failing.
        stage_grace: Seconds a timed-out stage is given to return before the
            next stage starts.  If it is still running after that, the ladder
            stops.
    """

    def __init__(
        self,
        composer: Composer,
        default_background: str = DEFAULT_BACKGROUND,
        stage_timeout: float = 60.0,
        stage_grace: float = 5.0,
    ) -> None:
        self._composer = composer
        self._default_background = default_background
        self._stage_timeout = stage_timeout
        self._stage_grace = stage_grace

    # -- Planning -----------------------------------------------------------

    def plan(self, config: CompositionConfig) -> list[tuple[str, CompositionConfig]]:
        """Return the ordered ``(stage, config)`` pairs for *config*."""
        stages: list[tuple[str, CompositionConfig]] = []
        if not config.character_only:
            stages.append((STAGE_FULL, config))
            fallback = config.with_default_background(self._default_background)
            if fallback != config:
                stages.append((STAGE_DEFAULT_BACKGROUND, fallback))
        stages.append((STAGE_CHARACTER_ONLY, config.character_only_variant()))
        return stages

    # -- Public interface ---------------------------------------------------

    async def compose(self, config: CompositionConfig, workspace: Workspace) -> CompositionResult:
        """Compose *config* inside *workspace*.

        The character image must already be written to
        ``workspace.input_path``.

        Args:
            config: Validated configuration.  It is re-bound to the
                workspace paths.
            workspace: The request's workspace.

        Returns:
            The final PNG and the stage that produced it.

        Raises:
            TerminalCompositionError: Every stage failed, a timed-out stage
                would not stop, or a workspace file operation failed.
            OutputRecoveryError: A stage succeeded but no valid output
                could be found.
        """
        config = config.bind(workspace)
        await self._in_workspace(self._backup_input, workspace)

        failures: list[CompositionStageError] = []
        for index, (stage, stage_config) in enumerate(self.plan(config)):
            if index:
                await self._in_workspace(self._prepare_retry, workspace)
            try:
                await self._run_stage(stage, stage_config)
            except CompositionStageError as exc:
                logger.warning(
                    "Composition stage '%s' failed for request %s: %s",
                    stage,
                    workspace.request_id,
                    exc.__cause__,
                )
                failures.append(exc)
                if isinstance(exc, StageStillRunningError):
                    raise TerminalCompositionError(
                        f"Stage '{stage}' still running {self._stage_grace:g}s after its "
                        "timeout; remaining stages skipped",
                        failures,
                    ) from exc
                continue

            data, recovered = await self._in_workspace(self._collect_output, workspace)
            if stage != STAGE_FULL:
                logger.info(
                    "Request %s composed by fallback stage '%s'", workspace.request_id, stage
                )
            return CompositionResult(data=data, stage=stage, recovered=recovered)

        raise TerminalCompositionError(
            f"All composition stages failed: {failures[-1].__cause__}", failures
        ) from failures[-1]

    async def preview(self, config: CompositionConfig, workspace: Workspace) -> CompositionResult:
        """Apply character-only effects for a quick preview.

        Unlike :meth:`compose`, exhausting the ladder is not an error: the
        unmodified character is returned so the preview pane always has
        something to show.

        Args:
            config: Validated configuration; only the character effects are
                used.
            workspace: The request's workspace.

        Returns:
            The preview PNG, or the original upload with stage ``"original"``.

        Raises:
            TerminalCompositionError: The original upload could not be read
                back.
        """
        try:
            return await self.compose(config.character_only_variant(), workspace)
        except TerminalCompositionError as exc:
            logger.warning(
                "Preview effects failed for request %s, returning original image: %s",
                workspace.request_id,
                exc,
            )
            data = await self._in_workspace(self._read_original, workspace)
            return CompositionResult(data=data, stage=STAGE_ORIGINAL)

    # -- Stage execution ----------------------------------------------------

    async def _run_stage(self, stage: str, config: CompositionConfig) -> None:
        worker = asyncio.ensure_future(asyncio.to_thread(self._composer.compose, config))
        try:
            await asyncio.wait_for(asyncio.shield(worker), timeout=self._stage_timeout)
        except asyncio.TimeoutError:
            cause = TimeoutError(f"timed out after {self._stage_timeout:g}s")
            if await self._wait_for_abandoned(worker):
                raise CompositionStageError(stage, cause) from cause
            raise StageStillRunningError(stage, cause) from cause
        except Exception as exc:
            # The compositor is a black box; any exception is a stage failure.
            raise CompositionStageError(stage, exc) from exc

    async def _wait_for_abandoned(self, worker: asyncio.Future) -> bool:
        """Wait up to ``stage_grace`` for a timed-out worker to return.

        Returns:
            ``True`` once the worker has finished, ``False`` if it is still
            running.
        """
        done, _ = await asyncio.wait({worker}, timeout=self._stage_grace)
        if not done:
            worker.add_done_callback(_consume_result)
            return False
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug("Timed-out stage finished late: %s", worker.exception())
        return True

    # -- Filesystem helpers (run in worker threads) -------------------------

    @staticmethod
    async def _in_workspace(step: Callable[[Workspace], _T], workspace: Workspace) -> _T:
        try:
            return await asyncio.to_thread(step, workspace)
        except OSError as exc:
            raise TerminalCompositionError(
                f"Workspace operation {step.__name__} failed for request "
                f"{workspace.request_id}: {exc}",
                detail="Temporary storage failure",
            ) from exc

    @staticmethod
    def _backup_input(workspace: Workspace) -> None:
        shutil.copyfile(workspace.input_path, workspace.backup_path)

    @staticmethod
    def _prepare_retry(workspace: Workspace) -> None:
        """Drop partial output and restore the input if a stage damaged it."""
        workspace.output_path.unlink(missing_ok=True)

        if not workspace.backup_path.is_file():
            return
        intact = workspace.input_path.is_file() and filecmp.cmp(
            workspace.input_path, workspace.backup_path, shallow=False
        )
        if not intact:
            logger.warning(
                "Input for request %s was altered by a failed stage; restoring backup",
                workspace.request_id,
            )
            shutil.copyfile(workspace.backup_path, workspace.input_path)

    @staticmethod
    def _collect_output(workspace: Workspace) -> tuple[bytes, bool]:
        output_path = workspace.output_path
        recovered = False

        if not output_path.is_file():
            candidate = find_output_candidate(workspace)
            if candidate is None:
                raise OutputRecoveryError("No valid output produced")
            logger.warning(
                "Output for request %s missing at %s; recovered %s",
                workspace.request_id,
                output_path.name,
                candidate.name,
            )
            shutil.copyfile(candidate, output_path)
            recovered = True

        data = output_path.read_bytes()
        if not is_complete_png(data):
            raise OutputRecoveryError("Compositor output is not a valid PNG")
        return data, recovered

    @staticmethod
    def _read_original(workspace: Workspace) -> bytes:
        source = workspace.backup_path if workspace.backup_path.is_file() else workspace.input_path
        return source.read_bytes()


def _consume_result(worker: asyncio.Future) -> None:
    # Retrieve a late failure so asyncio does not report it as unhandled.
    if not worker.cancelled() and worker.exception() is not None:
        logger.debug("Abandoned stage finished with: %s", worker.exception())
