"""HTTP responses for composed images and errors."""

from __future__ import annotations

from fastapi.responses import JSONResponse, Response

from vaporstudio.api.models import ErrorBody
from vaporstudio.core.orchestrator import CompositionResult

PNG_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Content-Security-Policy": "default-src 'self'",
    "X-Content-Type-Options": "nosniff",
}

STAGE_HEADER = "X-Composition-Stage"


def png_response(result: CompositionResult) -> Response:
    """Wrap composed bytes in a non-cacheable ``image/png`` response."""
    headers = dict(PNG_HEADERS)
    headers[STAGE_HEADER] = result.stage
    return Response(content=result.data, media_type="image/png", headers=headers)


def error_response(status_code: int, error: str, details: str = "", headers: dict | None = None) -> JSONResponse:
    """Return the ``{error, details}`` JSON body used by every failure."""
    body = ErrorBody(error=error, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def rate_limited_response(retry_after: int) -> JSONResponse:
    """429 with ``Retry-After`` set to the route's window in seconds."""
    return error_response(
        429,
        "Too many requests, please try again later",
        f"retry after {retry_after} seconds",
        headers={"Retry-After": str(retry_after)},
    )
