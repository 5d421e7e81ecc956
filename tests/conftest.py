import contextlib

import httpx
import pytest

import server
from aetherproxy.env import Settings
from auth.token_store import MemoryTokenStore
from tests.oauth_helpers import _build_callback_server, _client_config


def _settings(**overrides) -> Settings:
    values = {
        "oauth": _client_config(),
        "ide_credentials_enabled": False,
        "poll_window_seconds": 0.05,
    }
    values.update(overrides)
    return Settings(**values)


def _upstream_unavailable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected upstream call to {request.url}")


@pytest.fixture
def proxy_client():
    """Yields a factory for (client, app, callback_server) bound to the test loop."""

    @contextlib.asynccontextmanager
    async def factory(*, upstream=None, exchange=None, token_store=None, **settings_overrides):
        callback_server, _ = _build_callback_server(exchange=exchange)
        app = server.create_app(
            _settings(**settings_overrides),
            transport=httpx.MockTransport(upstream or _upstream_unavailable),
            callback_server=callback_server,
            token_store=token_store or MemoryTokenStore(),
        )
        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://proxy.test") as client:
                yield client, app, callback_server

    return factory
