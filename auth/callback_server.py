from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
import urllib.parse

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from auth import google_oauth2
from auth.errors import AuthorizationError, AuthorizationTimeoutError, ExchangeError
from auth.google_oauth2 import TokenSet
from auth.models import AuthorizationState
from auth.pkce import OAuthClientConfig

LOGGER = logging.getLogger("aetherproxy.auth.callback")

DEFAULT_CALLBACK_PORT = 51121
DEFAULT_CALLBACK_PATH = "/oauth-callback"

RESPONSE_PAGE = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>AetherSync sign-in</title>
    <style>
      body { font-family: system-ui, sans-serif; background: #1a1a1a; color: #fff;
             display: flex; align-items: center; justify-content: center;
             height: 100vh; margin: 0; }
      .card { background: #2a2a2a; padding: 2rem; border-radius: 12px; text-align: center; }
      h1 { margin-top: 0; color: #4ade80; }
    </style>
  </head>
  <body>
    <div class="card">
      <h1>Authentication complete</h1>
      <p>You can close this tab and return to the application.</p>
    </div>
    <script>setTimeout(() => window.close(), 2000);</script>
  </body>
</html>"""


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host app."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackServer:
    """Loopback listener for the OAuth redirect.

    Owns the table of in-flight authorizations keyed by ``state``. Each entry
    carries the PKCE verifier and the future the session registry waits on.
    The listener is bound once, on the first ``ensure_started()`` call.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        *,
        host: str = "127.0.0.1",
        port: int | None = None,
        exchange_code_fn=google_oauth2.exchange_code,
        fetch_user_email_fn=google_oauth2.fetch_user_email,
        fetch_project_id_fn=google_oauth2.fetch_project_id,
        clock=time.time,
    ) -> None:
        redirect = urllib.parse.urlparse(config.redirect_uri)
        self.config = config
        self.host = host
        self.port = port if port is not None else (redirect.port or DEFAULT_CALLBACK_PORT)
        self.path = redirect.path or DEFAULT_CALLBACK_PATH

        self._pending: dict[str, AuthorizationState] = {}
        self._exchange_code_fn = exchange_code_fn
        self._fetch_user_email_fn = fetch_user_email_fn
        self._fetch_project_id_fn = fetch_project_id_fn
        self._clock = clock

        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task | None = None
        self._start_lock = asyncio.Lock()

        self.app = Starlette(routes=[Route(self.path, self._handle_callback, methods=["GET"])])

    @property
    def pending_states(self) -> frozenset[str]:
        return frozenset(self._pending)

    @property
    def started(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    # -- lifecycle -------------------------------------------------------------

    async def ensure_started(self) -> None:
        async with self._start_lock:
            if self.started:
                return

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.host, self.port))
            except OSError:
                sock.close()
                LOGGER.error("OAuth callback server could not bind %s:%s", self.host, self.port)
                raise
            self.port = sock.getsockname()[1]

            config = uvicorn.Config(self.app, lifespan="off", log_level="warning")
            self._server = _EmbeddedServer(config)
            self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
            while not self._server.started:
                if self._serve_task.done():
                    serve_task, self._server, self._serve_task = self._serve_task, None, None
                    serve_task.result()
                    raise OSError(f"OAuth callback server on port {self.port} exited during startup")
                await asyncio.sleep(0.01)
            LOGGER.info("OAuth callback server listening on %s:%s", self.host, self.port)

    async def shutdown(self) -> None:
        async with self._start_lock:
            if self._server is not None and self._serve_task is not None:
                self._server.should_exit = True
                await self._serve_task
            self._server = None
            self._serve_task = None

        for state in list(self._pending):
            self._expire(state)

    # -- authorization table ---------------------------------------------------

    def register(
        self,
        state: str,
        verifier: str,
        *,
        timeout_seconds: float,
    ) -> asyncio.Future[TokenSet]:
        if state in self._pending:
            raise ValueError("Authorization state is already registered.")

        loop = asyncio.get_running_loop()
        now = self._clock()
        entry = AuthorizationState(
            verifier=verifier,
            state=state,
            created_at=now,
            expires_at=now + timeout_seconds,
            future=loop.create_future(),
        )
        entry.timer = loop.call_later(timeout_seconds, self._expire, state)
        self._pending[state] = entry
        return entry.future

    def _expire(self, state: str) -> None:
        entry = self._pending.pop(state, None)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        LOGGER.warning("Authorization %s... timed out", state[:8])
        _settle(entry.future, error=AuthorizationTimeoutError())

    # -- callback handling -----------------------------------------------------

    async def _handle_callback(self, request: Request) -> Response:
        return HTMLResponse(
            RESPONSE_PAGE,
            background=BackgroundTask(
                self.complete,
                code=request.query_params.get("code"),
                state=request.query_params.get("state"),
                error=request.query_params.get("error"),
            ),
        )

    async def complete(
        self,
        *,
        code: str | None,
        state: str | None,
        error: str | None,
    ) -> None:
        entry = self._pending.pop(state, None) if state else None
        if entry is None:
            LOGGER.warning("Ignoring OAuth callback with unknown or missing state")
            return
        if entry.timer is not None:
            entry.timer.cancel()

        if error:
            LOGGER.warning("Authorization %s... rejected by provider: %s", state[:8], error)
            _settle(entry.future, error=AuthorizationError(error))
            return
        if not code:
            _settle(entry.future, error=AuthorizationError("No code received"))
            return

        try:
            tokens = await self._exchange_code_fn(code, entry.verifier, self.config)
        except ExchangeError as exchange_error:
            LOGGER.warning("Token exchange failed: %s", exchange_error)
            _settle(entry.future, error=exchange_error)
            return
        except Exception as unexpected:
            LOGGER.exception("Token exchange failed unexpectedly")
            _settle(entry.future, error=ExchangeError(str(unexpected)))
            return

        try:
            email = await self._fetch_user_email_fn(tokens.access_token, self.config)
        except Exception:
            LOGGER.debug("User e-mail lookup failed", exc_info=True)
            email = None
        try:
            project_id = await self._fetch_project_id_fn(tokens.access_token, self.config)
        except Exception:
            LOGGER.debug("Project discovery failed", exc_info=True)
            project_id = self.config.fallback_project_id

        LOGGER.info("Authorization %s... complete (project %s)", state[:8], project_id)
        _settle(entry.future, result=tokens.with_identity(email=email, project_id=project_id))


def _settle(
    future: asyncio.Future[TokenSet],
    *,
    result: TokenSet | None = None,
    error: BaseException | None = None,
) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
