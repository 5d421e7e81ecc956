from __future__ import annotations

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .constants import API_KEY_HEADER, PROJECT_ID_HEADER, SOURCE_HEADER

ALLOWED_HEADERS = ", ".join(
    ["Authorization", "Content-Type", API_KEY_HEADER, PROJECT_ID_HEADER]
)


def _is_allowed_origin(origin: str | None, allowed_origins: set[str]) -> bool:
    return bool(origin and origin in allowed_origins)


def apply_cors_response(
    request: Request,
    response: Response,
    allowed_origins: set[str],
) -> Response:
    origin = request.headers.get("origin")
    if _is_allowed_origin(origin, allowed_origins):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Expose-Headers"] = SOURCE_HEADER
        response.headers["Vary"] = "Origin"
    return response


def preflight_route(path: str, allowed_origins: set[str]) -> Route:
    async def preflight(request: Request) -> Response:
        return apply_cors_response(request, Response(status_code=204), allowed_origins)

    return Route(path, preflight, methods=["OPTIONS"])


def cors_error_response(
    request: Request,
    allowed_origins: set[str],
    description: str,
    status_code: int,
    **extra,
) -> Response:
    return apply_cors_response(
        request,
        JSONResponse({"error": description, **extra}, status_code=status_code),
        allowed_origins,
    )
