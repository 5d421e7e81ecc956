from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from auth.google_oauth2 import TokenSet


@dataclass
class AuthorizationState:
    verifier: str
    state: str
    created_at: float
    expires_at: float
    future: asyncio.Future[TokenSet]
    timer: asyncio.TimerHandle | None = None


@dataclass
class PendingAuthRequest:
    request_id: str
    state: str
    future: asyncio.Future[TokenSet]
    created_at: float
    settled_at: float | None = None
    eviction: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.future.done()
