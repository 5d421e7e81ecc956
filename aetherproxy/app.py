from __future__ import annotations

import time

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from auth.credentials import CredentialSource
from auth.errors import ExchangeError
from auth.session_registry import AuthSessionRegistry

from .constants import API_KEY_HEADER, APP_VERSION, LOGGER, PROJECT_ID_HEADER
from .cors import apply_cors_response, cors_error_response, preflight_route
from .errors import AuthRequiredError, ProxyError, UpstreamTerminalError
from .models import list_models
from .relay import relay, relay_terminal_error
from .router import GenerationRouter
from .strategies import Credentials, GenerationRequest


def extract_bearer_token(authorization_header: str | None) -> str | None:
    if not authorization_header:
        return None
    scheme, _, token = authorization_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class ProxyService:
    """HTTP surface of the proxy: login, status polling and generation."""

    def __init__(
        self,
        *,
        registry: AuthSessionRegistry,
        router: GenerationRouter,
        api_key: str | None = None,
        ide_credentials: CredentialSource | None = None,
        session_credentials: CredentialSource | None = None,
        cors_origins: set[str] | None = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self.api_key = api_key
        self.ide_credentials = ide_credentials
        self.session_credentials = session_credentials
        self.cors_origins = set(cors_origins or ())

    def routes(self) -> list[Route]:
        routes = [
            Route("/health", self._handle_health, methods=["GET"]),
            Route("/models", self._handle_models, methods=["GET"]),
            Route("/auth/login", self._handle_login, methods=["POST"]),
            Route("/auth/status/{request_id}", self._handle_status, methods=["GET"]),
            Route("/generate", self._handle_generate, methods=["POST"]),
        ]
        paths = ("/models", "/auth/login", "/auth/status/{request_id}", "/generate")
        routes.extend(preflight_route(path, self.cors_origins) for path in paths)
        return routes

    # -- credentials -----------------------------------------------------------

    async def resolve_credentials(self, request: Request) -> Credentials:
        api_key = self.api_key or request.headers.get(API_KEY_HEADER) or None

        bearer_token = None
        if self.ide_credentials is not None:
            bearer_token = await self.ide_credentials.get_token()
            if bearer_token:
                LOGGER.info("Using bearer token from the IDE credential store")
        if not bearer_token:
            bearer_token = extract_bearer_token(request.headers.get("authorization"))
        if not bearer_token and self.session_credentials is not None:
            bearer_token = await self.session_credentials.get_token()

        return Credentials(api_key=api_key, bearer_token=bearer_token)

    # -- handlers --------------------------------------------------------------

    async def _handle_health(self, request: Request) -> Response:
        del request
        return JSONResponse({"status": "ok", "version": APP_VERSION, "timestamp": time.time()})

    async def _handle_models(self, request: Request) -> Response:
        return self._json(request, {"models": list_models()})

    async def _handle_login(self, request: Request) -> Response:
        try:
            started = await self.registry.start_auth()
        except Exception as error:
            LOGGER.exception("Auth start failed")
            return self._error(request, str(error), getattr(error, "status_code", 500))
        return self._json(request, {"authUrl": started.auth_url, "requestId": started.request_id})

    async def _handle_status(self, request: Request) -> Response:
        request_id = request.path_params["request_id"]
        result = await self.registry.poll_status(request_id)

        if result.status == "not_found":
            return self._error(request, "Request not found or expired", 404)
        if result.status == "pending":
            return self._json(request, {"status": "pending"}, status_code=202)
        if result.status == "complete":
            return self._json(request, {"status": "complete", **result.token_set.to_payload()})

        error = result.error
        extra = {"status": "failed", "error_type": type(error).__name__}
        if isinstance(error, ExchangeError):
            extra["body"] = error.body
        return self._error(request, str(error), getattr(error, "status_code", 500), **extra)

    async def _handle_generate(self, request: Request) -> Response:
        try:
            payload = await request.json()
        except ValueError:
            return self._error(request, "Invalid JSON body.", 400)

        try:
            credentials = await self.resolve_credentials(request)
            if credentials.empty:
                raise AuthRequiredError()
            generation_request = GenerationRequest.from_payload(
                payload,
                project_id_hint=request.headers.get(PROJECT_ID_HEADER),
            )
            result = await self.router.generate(generation_request, credentials)
        except UpstreamTerminalError as error:
            return apply_cors_response(request, relay_terminal_error(error), self.cors_origins)
        except ProxyError as error:
            return self._error(request, str(error), error.status_code)

        return apply_cors_response(request, await relay(result), self.cors_origins)

    # -- helpers ---------------------------------------------------------------

    def _json(self, request: Request, payload: dict, status_code: int = 200) -> Response:
        return apply_cors_response(
            request,
            JSONResponse(payload, status_code=status_code),
            self.cors_origins,
        )

    def _error(self, request: Request, description: str, status_code: int, **extra) -> Response:
        return cors_error_response(
            request=request,
            allowed_origins=self.cors_origins,
            description=description,
            status_code=status_code,
            **extra,
        )
