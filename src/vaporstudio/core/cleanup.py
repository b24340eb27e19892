"""Deferred, fire-and-forget workspace cleanup.

The compositor may still be flushing files when a request handler returns
(for example after a stage timed out while its worker thread kept running).
Deleting the workspace immediately would truncate those writes, so release is
scheduled as a background task that waits ``delay_seconds`` first.

Release tasks are tracked until they finish, contain their own errors, and
never touch the response that has already been sent.  :meth:`drain` awaits
whatever is still pending; the application lifespan calls it on shutdown so
no workspace outlives the process.
"""

from __future__ import annotations

import asyncio
import logging

from vaporstudio.core.errors import CleanupError
from vaporstudio.core.workspace import TempWorkspace, Workspace

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Schedules delayed removal of request workspaces.

    Args:
        workspaces: The allocator that owns the workspaces.
        delay_seconds: Wait before deleting.  ``0`` deletes on the next loop
            iteration.
    """

    def __init__(self, workspaces: TempWorkspace, delay_seconds: float = 0.5) -> None:
        self._workspaces = workspaces
        self._delay = delay_seconds
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of releases not yet finished."""
        return len(self._pending)

    def schedule_release(self, workspace: Workspace) -> asyncio.Task:
        """Queue *workspace* for deletion and return immediately.

        Must be called from within a running event loop.

        Args:
            workspace: The workspace to delete.

        Returns:
            The background task, mainly useful to tests.
        """
        task = asyncio.get_running_loop().create_task(
            self._release_later(workspace), name=f"release-{workspace.request_id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every pending release to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _release_later(self, workspace: Workspace) -> None:
        try:
            if self._delay > 0:
                await asyncio.sleep(self._delay)
            released = await asyncio.to_thread(self._workspaces.release, workspace)
            if not released:
                raise CleanupError(f"Workspace {workspace.directory} still present after cleanup")
        except asyncio.CancelledError:
            # Shutdown cancelled the delay; delete synchronously instead.
            self._workspaces.release(workspace)
            raise
        except CleanupError as exc:
            logger.warning("%s", exc)
        except Exception:
            logger.exception("Cleanup of workspace %s failed", workspace.directory)
