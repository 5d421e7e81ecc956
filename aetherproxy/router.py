from __future__ import annotations

from dataclasses import dataclass

import httpx

from .constants import LOGGER
from .errors import AuthRequiredError, UpstreamTerminalError, UpstreamTransientError
from .strategies import Credentials, Disposition, GenerationRequest, Strategy


@dataclass
class GenerationResult:
    source: str
    response: httpx.Response
    stream: bool


class GenerationRouter:
    """Tries each usable strategy once, in order.

    A strategy's ``classify()`` decides whether its outcome ends the request
    (success or an error the caller must see) or lets the next strategy run.
    """

    def __init__(self, strategies: list[Strategy]) -> None:
        self.strategies = list(strategies)

    async def generate(
        self,
        request: GenerationRequest,
        credentials: Credentials,
    ) -> GenerationResult:
        available = [strategy for strategy in self.strategies if strategy.is_available(credentials)]
        if not available:
            raise AuthRequiredError()

        for strategy in available:
            outcome = await strategy.attempt(request, credentials)
            disposition = strategy.classify(outcome)

            if disposition is Disposition.RETRYABLE:
                LOGGER.warning(
                    "Strategy %s unavailable (%s); trying next",
                    strategy.name,
                    outcome.status_code if outcome.status_code is not None else outcome.error,
                )
                await outcome.aclose()
                continue

            response = outcome.response
            if outcome.ok:
                LOGGER.info("Strategy %s served %s", strategy.name, request.model)
                return GenerationResult(
                    source=strategy.name,
                    response=response,
                    stream=request.stream,
                )

            try:
                body = await response.aread()
            finally:
                await response.aclose()
            LOGGER.warning(
                "Strategy %s failed with %s: %s",
                strategy.name,
                response.status_code,
                body[:150].decode("utf-8", errors="replace"),
            )
            raise UpstreamTerminalError(
                response.status_code,
                body,
                content_type=response.headers.get("content-type"),
                source=strategy.name,
            )

        raise UpstreamTransientError()
