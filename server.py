from __future__ import annotations

import contextlib

import httpx
import uvicorn
from starlette.applications import Starlette

from aetherproxy.app import ProxyService
from aetherproxy.constants import LOGGER
from aetherproxy.env import Settings, load_env, load_settings, setup_logging, validate_env
from aetherproxy.http import build_http_client
from aetherproxy.router import GenerationRouter
from aetherproxy.strategies import ApiKeyStrategy, OAuthStrategy
from auth.callback_server import CallbackServer
from auth.credentials import IdeCredentialSource, StoredSessionCredentialSource
from auth.session_registry import AuthSessionRegistry
from auth.token_store import FileTokenStore, TokenStore


def build_service(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient,
    callback_server: CallbackServer | None = None,
    token_store: TokenStore | None = None,
) -> ProxyService:
    token_store = token_store or FileTokenStore(settings.token_store_path)
    callback_server = callback_server or CallbackServer(
        settings.oauth,
        host=settings.callback_host,
        port=settings.callback_port,
    )
    registry = AuthSessionRegistry(
        callback_server,
        settings.oauth,
        auth_timeout_seconds=settings.auth_timeout_seconds,
        poll_window_seconds=settings.poll_window_seconds,
        result_grace_seconds=settings.result_grace_seconds,
        token_store=token_store,
    )
    router = GenerationRouter(
        [
            ApiKeyStrategy(http_client, base_url=settings.gemini_api_base_url),
            OAuthStrategy(
                http_client,
                default_project_id=settings.oauth.fallback_project_id,
                base_url=settings.cloud_code_base_url,
                region=settings.cloud_code_region,
            ),
        ]
    )
    ide_credentials = None
    if settings.ide_credentials_enabled:
        ide_credentials = IdeCredentialSource(settings.ide_state_db_path)

    return ProxyService(
        registry=registry,
        router=router,
        api_key=settings.api_key,
        ide_credentials=ide_credentials,
        session_credentials=StoredSessionCredentialSource(token_store, settings.oauth),
        cors_origins=settings.cors_origins,
    )


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    callback_server: CallbackServer | None = None,
    token_store: TokenStore | None = None,
) -> Starlette:
    debug_enabled = True
    if settings is None:
        load_env()
        debug_enabled = setup_logging()
        settings = load_settings()
    validate_env(settings)

    http_client = build_http_client(
        timeout=settings.upstream_timeout_seconds,
        debug_enabled=debug_enabled,
        transport=transport,
    )
    service = build_service(
        settings,
        http_client=http_client,
        callback_server=callback_server,
        token_store=token_store,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        del app
        try:
            yield
        finally:
            await service.registry.callback_server.shutdown()
            await http_client.aclose()

    app = Starlette(routes=service.routes(), lifespan=lifespan)
    app.state.service = service
    app.state.settings = settings
    return app


def main() -> None:
    app = create_app()
    settings = app.state.settings
    host, port = settings.host, settings.port
    LOGGER.info("AetherSync proxy running on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
