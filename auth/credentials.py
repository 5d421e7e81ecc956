from __future__ import annotations

import asyncio
import logging
import os
import re
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path

from auth import google_oauth2
from auth.pkce import OAuthClientConfig
from auth.token_store import DEFAULT_SESSION_ID, TokenStore

LOGGER = logging.getLogger("aetherproxy.auth.credentials")

ACCESS_TOKEN_PATTERN = re.compile(r"ya29\.[A-Za-z0-9_\-.]+")
IDE_AUTH_STATUS_KEY = "antigravityAuthStatus"


def default_ide_state_db_path() -> Path:
    appdata = os.getenv("APPDATA")
    if appdata:
        base = Path(appdata)
    elif os.name == "posix" and Path.home().joinpath("Library").exists():
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.getenv("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / "Antigravity" / "User" / "globalStorage" / "state.vscdb"


class CredentialSource(ABC):
    @abstractmethod
    async def get_token(self) -> str | None:
        raise NotImplementedError


class IdeCredentialSource(CredentialSource):
    """Reads the editor's cached Google access token from its state database.

    Opened read-only; a missing file, a locked database or an unexpected
    schema all yield ``None``.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else default_ide_state_db_path()

    async def get_token(self) -> str | None:
        try:
            return await asyncio.to_thread(self._read_token)
        except Exception as error:
            LOGGER.debug("IDE credential lookup failed: %s", error)
            return None

    def _read_token(self) -> str | None:
        if not self.db_path.is_file():
            return None

        uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
        connection = sqlite3.connect(uri, uri=True, timeout=0.5)
        try:
            row = connection.execute(
                "SELECT value FROM ItemTable WHERE key = ?",
                (IDE_AUTH_STATUS_KEY,),
            ).fetchone()
        finally:
            connection.close()

        if row is None or not row[0]:
            return None
        value = row[0]
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        match = ACCESS_TOKEN_PATTERN.search(str(value))
        return match.group(0) if match else None


class StoredSessionCredentialSource(CredentialSource):
    """Serves the access token of the session saved after a completed login.

    Expired tokens are refreshed and written back to the store.
    """

    def __init__(
        self,
        token_store: TokenStore,
        client_config: OAuthClientConfig,
        *,
        session_id: str = DEFAULT_SESSION_ID,
        refresh_token_fn=google_oauth2.refresh_access_token,
    ) -> None:
        self.token_store = token_store
        self.client_config = client_config
        self.session_id = session_id
        self._refresh_token_fn = refresh_token_fn
        self._refresh_lock = asyncio.Lock()

    async def get_token(self) -> str | None:
        try:
            token_set = await self.token_store.get(self.session_id)
            if token_set is None:
                return None
            if not token_set.is_expired():
                return token_set.access_token

            async with self._refresh_lock:
                # Another request may have refreshed while this one waited.
                token_set = await self.token_store.get(self.session_id)
                if token_set is None:
                    return None
                if not token_set.is_expired():
                    return token_set.access_token

                LOGGER.info("Stored session token expired; refreshing")
                refreshed = await self._refresh_token_fn(token_set, self.client_config)
                await self.token_store.set(self.session_id, refreshed)
                return refreshed.access_token
        except Exception as error:
            LOGGER.warning("Stored session unavailable: %s", error)
            return None
