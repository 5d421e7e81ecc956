from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from .constants import (
    CLOUD_CODE_BASE_URL,
    CLOUD_CODE_HEADERS,
    CLOUD_CODE_REGION,
    GEMINI_API_BASE_URL,
    SOURCE_API_KEY,
    SOURCE_CLOUD_CODE,
)
from .errors import ValidationError
from .models import to_internal_model, to_public_model

LOGGER = logging.getLogger("aetherproxy.strategies")


class Disposition(enum.Enum):
    TERMINAL = "terminal"
    RETRYABLE = "retryable"


@dataclass
class GenerationRequest:
    model: str
    contents: list
    generation_config: dict | None = None
    system_instruction: dict | None = None
    stream: bool = False
    project_id_hint: str | None = None

    @classmethod
    def from_payload(cls, payload: object, *, project_id_hint: str | None = None) -> "GenerationRequest":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object.")

        model = payload.get("model")
        contents = payload.get("contents")
        generation_config = payload.get("generationConfig")
        system_instruction = payload.get("systemInstruction")

        if not isinstance(model, str) or not model.strip():
            raise ValidationError("Model is required.")
        if not isinstance(contents, list) or not contents:
            raise ValidationError("contents must be a non-empty list.")
        if generation_config is not None and not isinstance(generation_config, dict):
            raise ValidationError("generationConfig must be an object.")
        if system_instruction is not None and not isinstance(system_instruction, dict):
            raise ValidationError("systemInstruction must be an object.")

        return cls(
            model=model.strip(),
            contents=contents,
            generation_config=generation_config,
            system_instruction=system_instruction,
            stream=bool(payload.get("stream", False)),
            project_id_hint=project_id_hint or None,
        )

    @property
    def method(self) -> str:
        return "streamGenerateContent" if self.stream else "generateContent"

    def upstream_body(self) -> dict:
        body: dict = {"contents": self.contents}
        if self.generation_config is not None:
            body["generationConfig"] = self.generation_config
        if self.system_instruction is not None:
            body["systemInstruction"] = self.system_instruction
        return body


@dataclass
class Credentials:
    api_key: str | None = None
    bearer_token: str | None = None

    @property
    def empty(self) -> bool:
        return not self.api_key and not self.bearer_token


@dataclass
class StrategyOutcome:
    strategy_name: str
    status_code: int | None
    response: httpx.Response | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    async def aclose(self) -> None:
        if self.response is not None:
            await self.response.aclose()


class Strategy(ABC):
    name: str

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @abstractmethod
    def is_available(self, credentials: Credentials) -> bool:
        raise NotImplementedError

    @abstractmethod
    def build_request(self, request: GenerationRequest, credentials: Credentials) -> httpx.Request:
        raise NotImplementedError

    @abstractmethod
    def classify(self, outcome: StrategyOutcome) -> Disposition:
        raise NotImplementedError

    async def attempt(self, request: GenerationRequest, credentials: Credentials) -> StrategyOutcome:
        upstream_request = self.build_request(request, credentials)
        try:
            # Streamed so SSE bodies are never buffered; unary callers read it.
            response = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as error:
            LOGGER.warning("%s network error: %s", self.name, error)
            return StrategyOutcome(self.name, None, error=error)
        return StrategyOutcome(self.name, response.status_code, response=response)


class ApiKeyStrategy(Strategy):
    """Public Gemini API, authenticated with a key in the query string."""

    name = SOURCE_API_KEY

    def __init__(self, client: httpx.AsyncClient, *, base_url: str = GEMINI_API_BASE_URL) -> None:
        super().__init__(client)
        self.base_url = base_url.rstrip("/")

    def is_available(self, credentials: Credentials) -> bool:
        return bool(credentials.api_key)

    def build_request(self, request: GenerationRequest, credentials: Credentials) -> httpx.Request:
        model = to_public_model(request.model)
        params = {"alt": "sse"} if request.stream else {}
        params["key"] = credentials.api_key
        return self.client.build_request(
            "POST",
            f"{self.base_url}/models/{model}:{request.method}",
            params=params,
            json=request.upstream_body(),
        )

    def classify(self, outcome: StrategyOutcome) -> Disposition:
        if outcome.status_code is None:
            return Disposition.RETRYABLE
        # 400 is the caller's mistake; another backend will not fix it.
        if outcome.ok or outcome.status_code == 400:
            return Disposition.TERMINAL
        return Disposition.RETRYABLE


class OAuthStrategy(Strategy):
    """Cloud Code ``v1internal`` endpoint, authenticated with a Google bearer token."""

    name = SOURCE_CLOUD_CODE

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        default_project_id: str,
        base_url: str = CLOUD_CODE_BASE_URL,
        region: str = CLOUD_CODE_REGION,
    ) -> None:
        super().__init__(client)
        self.default_project_id = default_project_id
        self.base_url = base_url.rstrip("/")
        self.region = region

    def is_available(self, credentials: Credentials) -> bool:
        return bool(credentials.bearer_token)

    def build_request(self, request: GenerationRequest, credentials: Credentials) -> httpx.Request:
        project_id = request.project_id_hint or self.default_project_id
        envelope = {
            "request": {
                "model": to_internal_model(request.model, project_id, self.region),
                **request.upstream_body(),
            }
        }
        return self.client.build_request(
            "POST",
            f"{self.base_url}/v1internal:{request.method}",
            params={"alt": "sse"} if request.stream else None,
            headers={
                **CLOUD_CODE_HEADERS,
                "Authorization": f"Bearer {credentials.bearer_token}",
            },
            json=envelope,
        )

    def classify(self, outcome: StrategyOutcome) -> Disposition:
        if outcome.status_code is None:
            return Disposition.RETRYABLE
        return Disposition.TERMINAL
