from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Literal

from auth import pkce
from auth.callback_server import CallbackServer
from auth.errors import AuthorizationError, RegistryFullError
from auth.google_oauth2 import TokenSet
from auth.models import PendingAuthRequest
from auth.pkce import OAuthClientConfig
from auth.token_store import DEFAULT_SESSION_ID, TokenStore

LOGGER = logging.getLogger("aetherproxy.auth.registry")

PollStatus = Literal["complete", "pending", "failed", "not_found"]


@dataclass
class AuthStart:
    auth_url: str
    request_id: str


@dataclass
class PollResult:
    status: PollStatus
    token_set: TokenSet | None = None
    error: BaseException | None = None


class AuthSessionRegistry:
    """Maps opaque request ids to in-flight or recently finished authorizations.

    Entries are created by ``start_auth()``. Once the underlying future settles
    the entry stays readable for ``result_grace_seconds`` so a final poll that
    races with completion still sees the outcome, then it is evicted. The
    registry holds at most ``max_entries`` entries; settled ones are dropped
    oldest-first to make room.
    """

    def __init__(
        self,
        callback_server: CallbackServer,
        client_config: OAuthClientConfig,
        *,
        auth_timeout_seconds: float = 300,
        poll_window_seconds: float = 25,
        result_grace_seconds: float = 60,
        max_entries: int = 64,
        token_store: TokenStore | None = None,
        clock=time.time,
    ) -> None:
        self.callback_server = callback_server
        self.client_config = client_config
        self.auth_timeout_seconds = auth_timeout_seconds
        self.poll_window_seconds = poll_window_seconds
        self.result_grace_seconds = result_grace_seconds
        self.max_entries = max_entries
        self.token_store = token_store
        self._clock = clock
        self._entries: dict[str, PendingAuthRequest] = {}
        self._background: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    async def start_auth(self) -> AuthStart:
        self._make_room()
        await self.callback_server.ensure_started()

        verifier, challenge = pkce.generate_challenge()
        state = pkce.generate_state()
        future = self.callback_server.register(
            state,
            verifier,
            timeout_seconds=self.auth_timeout_seconds,
        )

        request_id = str(uuid.uuid4())
        entry = PendingAuthRequest(
            request_id=request_id,
            state=state,
            future=future,
            created_at=self._clock(),
        )
        self._entries[request_id] = entry
        future.add_done_callback(lambda _future: self._on_settled(request_id))

        LOGGER.info("Started authorization request %s", request_id)
        return AuthStart(
            auth_url=pkce.build_authorization_url(challenge, state, self.client_config),
            request_id=request_id,
        )

    async def poll_status(
        self,
        request_id: str,
        *,
        window_seconds: float | None = None,
    ) -> PollResult:
        entry = self._entries.get(request_id)
        if entry is None:
            return PollResult(status="not_found")

        window = self.poll_window_seconds if window_seconds is None else window_seconds
        # asyncio.wait leaves the future running when the window elapses.
        done, _ = await asyncio.wait({entry.future}, timeout=window)
        if not done:
            return PollResult(status="pending")

        if entry.future.cancelled():
            return PollResult(status="failed", error=AuthorizationError("Authorization cancelled."))
        error = entry.future.exception()
        if error is not None:
            return PollResult(status="failed", error=error)
        return PollResult(status="complete", token_set=entry.future.result())

    def evict(self, request_id: str) -> None:
        entry = self._entries.pop(request_id, None)
        if entry is not None and entry.eviction is not None:
            entry.eviction.cancel()

    # -- internals -------------------------------------------------------------

    def _on_settled(self, request_id: str) -> None:
        entry = self._entries.get(request_id)
        if entry is None:
            return

        entry.settled_at = self._clock()
        loop = asyncio.get_running_loop()
        entry.eviction = loop.call_later(self.result_grace_seconds, self.evict, request_id)
        if entry.future.cancelled():
            return

        error = entry.future.exception()
        if error is not None:
            LOGGER.warning("Authorization request %s failed: %s", request_id, error)
            return

        LOGGER.info("Authorization request %s complete", request_id)
        if self.token_store is not None:
            task = loop.create_task(self._persist(entry.future.result()))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _persist(self, token_set: TokenSet) -> None:
        try:
            await self.token_store.set(DEFAULT_SESSION_ID, token_set)
        except Exception:
            LOGGER.exception("Could not persist the authorized session")

    def _make_room(self) -> None:
        if len(self._entries) < self.max_entries:
            return

        settled = sorted(
            (entry for entry in self._entries.values() if entry.settled),
            key=lambda entry: entry.settled_at or entry.created_at,
        )
        for entry in settled:
            self.evict(entry.request_id)
            if len(self._entries) < self.max_entries:
                return

        raise RegistryFullError()
