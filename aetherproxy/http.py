from __future__ import annotations

import httpx

from .constants import LOGGER


def redact_url(url: httpx.URL) -> str:
    if "key" not in url.params:
        return str(url)
    return str(url.copy_set_param("key", "***"))


async def log_request(request: httpx.Request) -> None:
    LOGGER.info("Upstream request %s %s", request.method, redact_url(request.url))


async def log_response(response: httpx.Response) -> None:
    LOGGER.info(
        "Upstream response %s %s -> %s",
        response.request.method,
        redact_url(response.request.url),
        response.status_code,
    )


def build_http_client(
    *,
    timeout: float,
    debug_enabled: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    event_hooks: dict[str, list] = {"request": [], "response": []}
    if debug_enabled:
        event_hooks["request"].append(log_request)
        event_hooks["response"].append(log_response)

    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        transport=transport,
        event_hooks=event_hooks,
    )
