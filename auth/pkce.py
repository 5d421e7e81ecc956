from __future__ import annotations

import base64
import hashlib
import secrets
import urllib.parse
from dataclasses import dataclass, field

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/cclog",
    "https://www.googleapis.com/auth/experimentsandconfigs",
]

DEFAULT_DISCOVERY_ENDPOINTS = [
    "https://cloudcode-pa.googleapis.com",
    "https://daily-cloudcode-pa.googleapis.com",
]


@dataclass
class OAuthClientConfig:
    client_id: str
    client_secret: str
    redirect_uri: str = "http://localhost:51121/oauth-callback"
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    authorize_url: str = GOOGLE_AUTHORIZE_URL
    token_url: str = GOOGLE_TOKEN_URL
    userinfo_url: str = GOOGLE_USERINFO_URL
    discovery_endpoints: list[str] = field(
        default_factory=lambda: list(DEFAULT_DISCOVERY_ENDPOINTS)
    )
    fallback_project_id: str = "default-project"
    request_timeout: float = 30.0


def generate_code_verifier() -> str:
    while True:
        verifier = secrets.token_urlsafe(64)
        if 43 <= len(verifier) <= 128:
            return verifier


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def generate_challenge() -> tuple[str, str]:
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier)


def generate_state() -> str:
    return secrets.token_urlsafe(24)


def build_authorization_url(
    code_challenge: str,
    state: str,
    config: OAuthClientConfig,
) -> str:
    query = {
        "client_id": config.client_id,
        "response_type": "code",
        "redirect_uri": config.redirect_uri,
        "scope": " ".join(config.scopes),
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{config.authorize_url}?{urllib.parse.urlencode(query)}"
