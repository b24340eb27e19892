"""Vaporstudio -- FastAPI Application.

This module defines the FastAPI application factory, all REST API routes,
and the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
Every compose or preview request follows the same path:

1. **Rate limiting** -- a router-level dependency counts the request against
   the ``(client, route)`` fixed window and rejects it with 429 before
   anything else happens.
2. **Validation** -- form fields become PNG bytes plus a
   :class:`~vaporstudio.core.composition.CompositionConfig`.  Rejected input
   never allocates a workspace.
3. **Workspace** -- a private temporary directory receives the upload.
4. **Orchestration** -- :class:`~vaporstudio.core.orchestrator.CompositionOrchestrator`
   runs the fallback ladder against the compositor and recovers misplaced
   output.
5. **Cleanup** -- a ``finally`` block hands the workspace to the
   :class:`~vaporstudio.core.cleanup.CleanupScheduler`, which deletes it
   after a short delay on every path.

Shared components (limiter, orchestrator, scheduler...) are built once per
application by :func:`create_app` and stored on ``app.state``.

Endpoints
---------
========  ========================  ==========================================
Method    Path                      Purpose
========  ========================  ==========================================
POST      ``/api/compose``          Full composition, returns ``image/png``
POST      ``/api/preview-effects``  Character-only effects preview
GET       ``/api/assets``           Available backgrounds and overlays
GET       ``/api/config``           Gradients, defaults, canvas size
GET       ``/api/health``           Liveness probe
========  ========================  ==========================================

Usage
-----
CLI (installed entry point)::

    vaporstudio

Direct invocation::

    python -m vaporstudio.api.main
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from vaporstudio import __version__
from vaporstudio.api.assets import list_assets
from vaporstudio.api.models import AssetListing, CanvasSize, ServiceConfig
from vaporstudio.api.responses import error_response, png_response, rate_limited_response
from vaporstudio.api.validation import IMAGE_FILE_FIELD, InputValidator, ValidatedRequest
from vaporstudio.core.cleanup import CleanupScheduler
from vaporstudio.core.composer import Composer, VaporwaverCliComposer
from vaporstudio.core.composition import GRADIENTS
from vaporstudio.core.config import VaporstudioConfig, config
from vaporstudio.core.errors import (
    InputValidationError,
    RateLimitError,
    TerminalCompositionError,
)
from vaporstudio.core.orchestrator import CompositionOrchestrator
from vaporstudio.core.rate_limiter import UNKNOWN_CLIENT, RateLimit, RateLimiter
from vaporstudio.core.workspace import TempWorkspace

logger = logging.getLogger(__name__)

BACKGROUNDS_URL = "/assets/backgrounds"
OVERLAYS_URL = "/assets/overlays"

# Room for the non-image form fields and multipart boundaries.
_FORM_OVERHEAD_BYTES = 64 * 1024


# ---------------------------------------------------------------------------
# Request helpers.
# ---------------------------------------------------------------------------


def client_identity(request: Request) -> str:
    """Return the client's address for rate limiting.

    The first ``X-Forwarded-For`` entry wins (the service normally sits behind
    a reverse proxy), then the socket peer, then ``"unknown"``.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


async def enforce_rate_limit(request: Request) -> None:
    """Router dependency: reject the request if its window is exhausted.

    Raises:
        RateLimitError: Translated to a 429 by the exception handler.
    """
    limiter: RateLimiter = request.app.state.rate_limiter
    route = request.url.path
    if not limiter.admit(client_identity(request), route):
        raise RateLimitError(route, limiter.limit_for(route).window_seconds)


async def read_form_fields(request: Request) -> dict[str, Any]:
    """Read the multipart (or urlencoded) body into a plain dict.

    Uploaded files are read into ``bytes``.  For repeated keys the first
    value wins.

    Raises:
        InputValidationError: If the body or an uploaded file exceeds the
            upload limit.  Oversized files are never read into memory.
    """
    settings: VaporstudioConfig = request.app.state.settings
    limit = settings.max_upload_bytes
    # Base64 inflates the image by 4/3; leave headroom for the data URL prefix.
    body_limit = limit * 2 + _FORM_OVERHEAD_BYTES

    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > body_limit:
        raise InputValidationError(
            IMAGE_FILE_FIELD, f"request body is too large (limit {body_limit} bytes)"
        )

    form = await request.form(max_part_size=limit * 2)
    fields: dict[str, Any] = {}
    try:
        for key, value in form.multi_items():
            if key in fields:
                continue
            if isinstance(value, UploadFile):
                fields[key] = await _read_upload(key, value, limit)
            else:
                fields[key] = value
    finally:
        await form.close()
    return fields


async def _read_upload(field: str, upload: UploadFile, limit: int) -> bytes:
    """Read at most *limit* bytes of *upload*, rejecting anything larger."""
    if upload.size is not None and upload.size > limit:
        raise InputValidationError(field, f"image is too large ({upload.size} bytes, limit {limit})")
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise InputValidationError(field, f"image is too large (limit {limit} bytes)")
    return data


async def run_composition(app: FastAPI, validated: ValidatedRequest, *, preview: bool) -> Response:
    """Allocate a workspace, run the orchestrator, and always schedule cleanup."""
    state = app.state
    workspace = await run_in_threadpool(state.workspaces.allocate)
    try:
        try:
            await run_in_threadpool(workspace.input_path.write_bytes, validated.image)
        except OSError as exc:
            raise TerminalCompositionError(
                f"Failed to store upload for request {workspace.request_id}: {exc}",
                detail="Temporary storage failure",
            ) from exc

        if preview:
            result = await state.orchestrator.preview(validated.config, workspace)
        else:
            result = await state.orchestrator.compose(validated.config, workspace)
    except TerminalCompositionError:
        logger.exception("Composition failed for request %s", workspace.request_id)
        raise
    finally:
        state.cleanup.schedule_release(workspace)

    return png_response(result)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api", dependencies=[Depends(enforce_rate_limit)])


@router.post("/compose", response_class=Response)
async def compose(request: Request) -> Response:
    """Composite the character over a background and overlay.

    Form fields: ``character_base64`` or ``character`` (file), ``background``,
    ``overlay``, ``overlay_x``, ``overlay_y``, ``overlay_scale``,
    ``overlay_rotate``, ``overlay_above_character``, ``character_x``,
    ``character_y``, ``character_scale``, ``character_rotate``, ``glitch``,
    ``glitch_seed``, ``gradient``, ``crt``.

    Returns:
        ``image/png`` bytes.  The ``X-Composition-Stage`` header names the
        fallback stage that produced them.

    Raises:
        InputValidationError: 400.
        TerminalCompositionError: 500 once every fallback stage failed.
    """
    fields = await read_form_fields(request)
    validated = request.app.state.validator.parse_compose(fields)
    return await run_composition(request.app, validated, preview=False)


@router.post("/preview-effects", response_class=Response)
async def preview_effects(request: Request) -> Response:
    """Apply glitch and gradient effects to the character alone.

    Form fields: ``character_base64`` or ``character``, ``glitch``,
    ``glitch_seed``, ``gradient``.  If the effects cannot be rendered the
    unmodified character is returned (``X-Composition-Stage: original``).
    """
    fields = await read_form_fields(request)
    validated = request.app.state.validator.parse_preview(fields)
    return await run_composition(request.app, validated, preview=True)


@router.get("/assets", response_model=AssetListing)
async def get_assets(request: Request) -> AssetListing:
    """List the backgrounds and overlays available on disk."""
    settings: VaporstudioConfig = request.app.state.settings
    backgrounds = await run_in_threadpool(list_assets, settings.backgrounds_dir, BACKGROUNDS_URL)
    overlays = await run_in_threadpool(list_assets, settings.overlays_dir, OVERLAYS_URL)
    return AssetListing(backgrounds=backgrounds, overlays=overlays)


@router.get("/config", response_model=ServiceConfig)
async def get_config(request: Request) -> ServiceConfig:
    """Return the values a client needs to build its controls."""
    settings: VaporstudioConfig = request.app.state.settings
    return ServiceConfig(
        version=__version__,
        gradients=list(GRADIENTS),
        default_background=settings.default_background,
        canvas=CanvasSize(width=settings.canvas_width, height=settings.canvas_height),
        glitch_range=(0.1, 10.0),
        glitch_seed_range=(0, 100),
        max_upload_bytes=settings.max_upload_bytes,
    )


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Exception handlers.
# ---------------------------------------------------------------------------


async def _handle_validation_error(request: Request, exc: InputValidationError) -> Response:
    return error_response(400, "Invalid request", str(exc))


async def _handle_rate_limit(request: Request, exc: RateLimitError) -> Response:
    return rate_limited_response(exc.retry_after)


async def _handle_terminal_error(request: Request, exc: TerminalCompositionError) -> Response:
    # The full cause, including compositor stderr, was logged by run_composition.
    return error_response(500, "Failed to generate image", exc.detail)


# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


async def _purge_rate_limits_periodically(limiter: RateLimiter, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        limiter.purge()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle.

    On startup:
        Sweeps workspaces left over by a previous process and starts the
        periodic rate-limit purge.

    On shutdown:
        Stops the purge task and waits for pending workspace cleanups so no
        temporary directory outlives the server.
    """
    settings: VaporstudioConfig = app.state.settings

    await run_in_threadpool(app.state.workspaces.sweep_stale, settings.stale_workspace_seconds)
    purge_task = asyncio.create_task(
        _purge_rate_limits_periodically(
            app.state.rate_limiter, settings.rate_limit_purge_interval_seconds
        )
    )
    logger.info("Vaporstudio started (workspaces in %s).", app.state.workspaces.root)

    yield

    purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await purge_task
    await app.state.cleanup.drain()
    logger.info("Vaporstudio stopped; pending cleanups drained.")


def build_rate_limiter(settings: VaporstudioConfig) -> RateLimiter:
    """Create the limiter from the configured route table."""
    limits = {
        route: RateLimit(limit.max_requests, limit.window_seconds)
        for route, limit in settings.rate_limits.items()
    }
    default = RateLimit(
        settings.default_rate_limit.max_requests, settings.default_rate_limit.window_seconds
    )
    return RateLimiter(limits, default)


def create_app(
    settings: VaporstudioConfig | None = None,
    composer: Composer | None = None,
) -> FastAPI:
    """Build a fully wired application.

    Args:
        settings: Configuration; the global :data:`config` when omitted.
        composer: Compositor implementation; a
            :class:`VaporwaverCliComposer` built from *settings* when omitted.

    Returns:
        The FastAPI application.
    """
    settings = settings or config
    if composer is None:
        composer = VaporwaverCliComposer(
            script=settings.vaporwaver_script,
            python_executable=settings.python_executable,
            timeout=settings.stage_timeout_seconds,
        )

    app = FastAPI(
        title="Vaporstudio",
        description="Vaporwave image compositing API.",
        version=__version__,
        lifespan=lifespan,
    )

    workspaces = TempWorkspace(settings.temp_root)
    app.state.settings = settings
    app.state.workspaces = workspaces
    app.state.rate_limiter = build_rate_limiter(settings)
    app.state.validator = InputValidator(settings.max_upload_bytes)
    app.state.orchestrator = CompositionOrchestrator(
        composer,
        default_background=settings.default_background,
        # The composer kills its subprocess at stage_timeout_seconds, before
        # the orchestrator gives up on the stage.
        stage_timeout=settings.stage_timeout_seconds + settings.stage_grace_seconds,
        stage_grace=settings.stage_grace_seconds,
    )
    app.state.cleanup = CleanupScheduler(workspaces, settings.cleanup_delay_seconds)

    # Allow cross-origin requests so a UI can be served from a different
    # port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Composition-Stage"],
    )

    app.add_exception_handler(InputValidationError, _handle_validation_error)
    app.add_exception_handler(RateLimitError, _handle_rate_limit)
    app.add_exception_handler(TerminalCompositionError, _handle_terminal_error)

    app.include_router(router)
    app.mount(BACKGROUNDS_URL, StaticFiles(directory=str(settings.backgrounds_dir)), name="backgrounds")
    app.mount(OVERLAYS_URL, StaticFiles(directory=str(settings.overlays_dir)), name="overlays")

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~vaporstudio.core.config.config` (which
    loads from ``VAPORSTUDIO_SERVER_HOST`` and ``VAPORSTUDIO_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:3000``.

    This function is registered as the ``vaporstudio`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "vaporstudio.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
