"""Exception hierarchy for the Vaporstudio API.

Every error the service raises derives from :class:`VaporstudioError`.  The
HTTP layer maps the user-visible ones onto status codes:

==============================  ======  =====================================
Exception                       Status  Visibility
==============================  ======  =====================================
``InputValidationError``        400     Field name and reason returned
``RateLimitError``              429     ``Retry-After`` header
``TerminalCompositionError``    500     Generic message and public ``detail``
``OutputRecoveryError``         500     Same as terminal
``CompositionStageError``       --      Internal, retried by the orchestrator
``StageStillRunningError``      --      Internal, ends the fallback ladder
``CleanupError``                --      Logged only
``ComposerError``               --      Raised by composer implementations
==============================  ======  =====================================
"""

from __future__ import annotations


class VaporstudioError(Exception):
    """Base class for all service errors."""


class InputValidationError(VaporstudioError):
    """Malformed or out-of-range request input.

    The message is intended to be displayed directly to the user.

    Attributes:
        field: Name of the offending form field.
        reason: Human-readable explanation.
    """

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class RateLimitError(VaporstudioError):
    """The client exceeded the fixed-window limit for a route."""

    def __init__(self, route: str, retry_after: int) -> None:
        super().__init__(f"Rate limit exceeded for {route}")
        self.route = route
        self.retry_after = retry_after


class ComposerError(VaporstudioError):
    """The external compositor reported a failure."""


class CompositionStageError(VaporstudioError):
    """A single fallback stage failed.

    Attributes:
        stage: Name of the stage (``full``, ``default_background`` or
            ``character_only``).
    """

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"stage '{stage}' failed: {cause}")
        self.stage = stage
        self.__cause__ = cause


class StageStillRunningError(CompositionStageError):
    """A timed-out stage was still running after its grace period.

    It may still write into the shared workspace, so no further stage may
    start.
    """


class TerminalCompositionError(VaporstudioError):
    """Every fallback stage was exhausted; the request cannot be served.

    The message carries the full cause and is only logged.  Clients receive
    :attr:`detail`, which never includes compositor output or server paths.

    Attributes:
        stage_errors: The per-stage failures, in the order they occurred.
        detail: Client-safe description of the failure.
    """

    default_detail = "All composition stages failed"

    def __init__(
        self,
        message: str,
        stage_errors: list[CompositionStageError] | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stage_errors = list(stage_errors or [])
        self.detail = detail or self.default_detail


class OutputRecoveryError(TerminalCompositionError):
    """The composer returned but no valid output file could be located."""

    default_detail = "No valid output produced"


class CleanupError(VaporstudioError):
    """A workspace could not be removed.  Never surfaced to clients."""
