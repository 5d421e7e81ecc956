from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from auth.callback_server import DEFAULT_CALLBACK_PORT
from auth.pkce import (
    DEFAULT_DISCOVERY_ENDPOINTS,
    DEFAULT_SCOPES,
    GOOGLE_AUTHORIZE_URL,
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    OAuthClientConfig,
)

from .constants import (
    CLOUD_CODE_BASE_URL,
    CLOUD_CODE_REGION,
    DEFAULT_CORS_ORIGINS,
    GEMINI_API_BASE_URL,
    LOGGER,
)

DEFAULT_REDIRECT_URI = f"http://localhost:{DEFAULT_CALLBACK_PORT}/oauth-callback"


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> list[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


@dataclass
class Settings:
    oauth: OAuthClientConfig
    callback_host: str = "127.0.0.1"
    callback_port: int = DEFAULT_CALLBACK_PORT
    gemini_api_base_url: str = GEMINI_API_BASE_URL
    cloud_code_base_url: str = CLOUD_CODE_BASE_URL
    cloud_code_region: str = CLOUD_CODE_REGION
    api_key: str | None = None
    auth_timeout_seconds: float = 300
    poll_window_seconds: float = 25
    result_grace_seconds: float = 60
    upstream_timeout_seconds: float = 120
    ide_credentials_enabled: bool = True
    ide_state_db_path: str | None = None
    token_store_path: str = ".session.json"
    cors_origins: set[str] = field(default_factory=lambda: set(DEFAULT_CORS_ORIGINS))
    host: str = "127.0.0.1"
    port: int = 3001


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def load_settings() -> Settings:
    redirect_uri = os.getenv("OAUTH_REDIRECT_URI", "").strip() or DEFAULT_REDIRECT_URI
    redirect_port = urlparse(redirect_uri).port or DEFAULT_CALLBACK_PORT

    oauth = OAuthClientConfig(
        client_id=os.getenv("OAUTH_CLIENT_ID", "").strip(),
        client_secret=os.getenv("OAUTH_CLIENT_SECRET", "").strip(),
        redirect_uri=redirect_uri,
        scopes=os.getenv("OAUTH_SCOPES", " ".join(DEFAULT_SCOPES)).split(),
        authorize_url=os.getenv("OAUTH_AUTH_URL", GOOGLE_AUTHORIZE_URL),
        token_url=os.getenv("OAUTH_TOKEN_URL", GOOGLE_TOKEN_URL),
        userinfo_url=os.getenv("OAUTH_USERINFO_URL", GOOGLE_USERINFO_URL),
        discovery_endpoints=parse_csv_env("CODE_ASSIST_ENDPOINTS")
        or list(DEFAULT_DISCOVERY_ENDPOINTS),
        fallback_project_id=os.getenv("DEFAULT_PROJECT_ID", "").strip() or "default-project",
        request_timeout=_get_env_float("OAUTH_REQUEST_TIMEOUT_SECONDS", 30.0),
    )

    api_key = (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()

    return Settings(
        oauth=oauth,
        callback_host=os.getenv("OAUTH_CALLBACK_HOST", "127.0.0.1"),
        callback_port=_get_env_int("OAUTH_CALLBACK_PORT", redirect_port),
        gemini_api_base_url=os.getenv("GEMINI_API_BASE_URL", GEMINI_API_BASE_URL),
        cloud_code_base_url=os.getenv("CLOUD_CODE_BASE_URL", CLOUD_CODE_BASE_URL),
        cloud_code_region=os.getenv("CLOUD_CODE_REGION", CLOUD_CODE_REGION),
        api_key=api_key or None,
        auth_timeout_seconds=_get_env_float("AUTH_TIMEOUT_SECONDS", 300),
        poll_window_seconds=_get_env_float("AUTH_POLL_WINDOW_SECONDS", 25),
        result_grace_seconds=_get_env_float("AUTH_RESULT_GRACE_SECONDS", 60),
        upstream_timeout_seconds=_get_env_float("UPSTREAM_TIMEOUT_SECONDS", 120),
        ide_credentials_enabled=is_truthy(os.getenv("IDE_CREDENTIALS_ENABLED", "1")),
        ide_state_db_path=os.getenv("IDE_STATE_DB_PATH") or None,
        token_store_path=os.getenv("TOKEN_STORE_PATH", ".session.json"),
        cors_origins=set(DEFAULT_CORS_ORIGINS) | set(parse_csv_env("PROXY_CORS_ORIGINS")),
        host=os.getenv("PROXY_HOST", "127.0.0.1"),
        port=_get_env_int("PROXY_PORT", 3001),
    )


def validate_env(settings: Settings) -> bool:
    """Check the loaded settings; returns False when OAuth login is unusable."""
    try:
        redirect = TypeAdapter(AnyHttpUrl).validate_python(settings.oauth.redirect_uri)
    except PydanticValidationError as error:
        raise RuntimeError(
            "OAUTH_REDIRECT_URI must be an http(s) URL (for example: "
            f"{DEFAULT_REDIRECT_URI})."
        ) from error
    if redirect.host not in {"localhost", "127.0.0.1"}:
        LOGGER.warning(
            "OAUTH_REDIRECT_URI points at %s; the callback listener only binds locally.",
            redirect.host,
        )

    for timeout_key, value in (
        ("AUTH_TIMEOUT_SECONDS", settings.auth_timeout_seconds),
        ("AUTH_POLL_WINDOW_SECONDS", settings.poll_window_seconds),
        ("UPSTREAM_TIMEOUT_SECONDS", settings.upstream_timeout_seconds),
    ):
        if value <= 0:
            raise RuntimeError(f"{timeout_key} must be positive.")

    if not settings.oauth.client_id or not settings.oauth.client_secret:
        LOGGER.warning(
            "OAuth credentials not configured. Set OAUTH_CLIENT_ID and OAUTH_CLIENT_SECRET."
        )
        return False
    return True


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("PROXY_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
        # httpx logs full request URLs, which carry the API key.
        logging.getLogger("httpx").setLevel(logging.WARNING)
    return debug_enabled
