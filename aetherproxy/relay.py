from __future__ import annotations

import json
from collections.abc import AsyncIterator

import httpx
from starlette.responses import JSONResponse, Response, StreamingResponse

from .constants import LOGGER, SOURCE_HEADER
from .errors import UpstreamTerminalError
from .router import GenerationResult


async def iter_upstream(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield upstream chunks as they arrive.

    Content-Encoding is decoded here; the relayed response carries its own
    headers. A transport error is re-raised so the client connection is
    dropped without a closing event and the caller sees an incomplete stream.
    """
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                yield chunk
    except httpx.HTTPError as error:
        LOGGER.warning("Upstream stream aborted: %s", error)
        raise
    finally:
        await response.aclose()


def relay_stream(result: GenerationResult) -> StreamingResponse:
    return StreamingResponse(
        iter_upstream(result.response),
        status_code=result.response.status_code,
        media_type="text/event-stream",
        headers={SOURCE_HEADER: result.source, "Cache-Control": "no-cache"},
    )


async def relay_unary(result: GenerationResult) -> Response:
    try:
        body = await result.response.aread()
    finally:
        await result.response.aclose()

    try:
        payload = json.loads(body)
    except ValueError:
        return Response(
            body,
            status_code=result.response.status_code,
            media_type=result.response.headers.get("content-type"),
            headers={SOURCE_HEADER: result.source},
        )

    if isinstance(payload, dict):
        payload = {**payload, "source": result.source}
    return JSONResponse(
        payload,
        status_code=result.response.status_code,
        headers={SOURCE_HEADER: result.source},
    )


async def relay(result: GenerationResult) -> Response:
    if result.stream:
        return relay_stream(result)
    return await relay_unary(result)


def relay_terminal_error(error: UpstreamTerminalError) -> Response:
    return Response(
        error.body,
        status_code=error.status_code,
        media_type=error.content_type,
        headers={SOURCE_HEADER: error.source},
    )
