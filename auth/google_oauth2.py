from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, replace

import httpx

from auth.errors import ExchangeError
from auth.pkce import OAuthClientConfig

LOGGER = logging.getLogger("aetherproxy.auth")

# Access tokens are treated as expired this long before Google says they are.
EXPIRY_MARGIN_MS = 5 * 60 * 1000

CODE_ASSIST_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}
DISCOVERY_HEADERS = {
    "User-Agent": "google-api-nodejs-client/9.15.1",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": json.dumps(CODE_ASSIST_METADATA),
}


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: int
    project_id: str = ""
    email: str | None = None

    def is_expired(self, *, now_ms: int | None = None) -> bool:
        current = _now_ms() if now_ms is None else now_ms
        return current >= self.expires_at

    def with_identity(self, *, email: str | None, project_id: str) -> "TokenSet":
        return replace(self, email=email, project_id=project_id)

    def to_payload(self) -> dict:
        return asdict(self)

    @classmethod
    def from_grant(cls, payload: dict, *, body: str = "", refresh_token: str | None = None) -> "TokenSet":
        access_token = payload.get("access_token")
        new_refresh_token = payload.get("refresh_token") or refresh_token
        expires_in = payload.get("expires_in", 0)

        if not isinstance(access_token, str) or not access_token.strip():
            raise ExchangeError("Token exchange returned no access_token.", body=body)
        if not isinstance(new_refresh_token, str) or not new_refresh_token.strip():
            raise ExchangeError("Token exchange returned no refresh_token.", body=body)
        if not isinstance(expires_in, (int, float)):
            raise ExchangeError("Token exchange returned an invalid expires_in.", body=body)

        return cls(
            access_token=access_token.strip(),
            refresh_token=new_refresh_token.strip(),
            expires_at=_now_ms() + int(expires_in * 1000) - EXPIRY_MARGIN_MS,
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _token_request(
    payload: dict[str, str],
    config: OAuthClientConfig,
    *,
    client: httpx.AsyncClient | None = None,
    refresh_token: str | None = None,
) -> TokenSet:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=config.request_timeout)

    try:
        response = await http_client.post(config.token_url, data=payload)
    except httpx.HTTPError as error:
        raise ExchangeError(f"Token request failed: {error}") from error
    finally:
        if own_client:
            await http_client.aclose()

    body = response.text
    if not response.is_success:
        raise ExchangeError(
            f"Token request failed with status {response.status_code}: {body}",
            body=body,
            status=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as error:
        raise ExchangeError("Token endpoint returned a non-JSON body.", body=body) from error
    if not isinstance(data, dict):
        raise ExchangeError("Token endpoint returned an unexpected body.", body=body)

    return TokenSet.from_grant(data, body=body, refresh_token=refresh_token)


async def exchange_code(
    code: str,
    code_verifier: str,
    config: OAuthClientConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenSet:
    return await _token_request(
        {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": config.redirect_uri,
            "code_verifier": code_verifier,
        },
        config,
        client=client,
    )


async def refresh_access_token(
    token_set: TokenSet,
    config: OAuthClientConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Refresh an access token, keeping the identity fields of the old set.

    Google usually omits ``refresh_token`` on refresh; the previous one is kept.
    """
    refreshed = await _token_request(
        {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": token_set.refresh_token,
        },
        config,
        client=client,
        refresh_token=token_set.refresh_token,
    )
    return refreshed.with_identity(email=token_set.email, project_id=token_set.project_id)


async def fetch_user_email(
    access_token: str,
    config: OAuthClientConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> str | None:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=config.request_timeout)

    try:
        response = await http_client.get(
            config.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not response.is_success:
            LOGGER.debug("User info lookup failed with status %s", response.status_code)
            return None
        email = response.json().get("email")
    except Exception as error:
        LOGGER.debug("User info lookup failed: %s", error)
        return None
    finally:
        if own_client:
            await http_client.aclose()

    return email if isinstance(email, str) and email else None


def _extract_project_id(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    project = payload.get("cloudaicompanionProject")
    if isinstance(project, str) and project:
        return project
    if isinstance(project, dict):
        project_id = project.get("id")
        if isinstance(project_id, str) and project_id:
            return project_id
    return None


async def fetch_project_id(
    access_token: str,
    config: OAuthClientConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> str:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=config.request_timeout)
    headers = {
        **DISCOVERY_HEADERS,
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }

    try:
        for endpoint in config.discovery_endpoints:
            url = f"{endpoint.rstrip('/')}/v1internal:loadCodeAssist"
            try:
                response = await http_client.post(
                    url,
                    headers=headers,
                    json={"metadata": CODE_ASSIST_METADATA},
                )
                if not response.is_success:
                    LOGGER.debug("Project discovery %s -> %s", url, response.status_code)
                    continue
                project_id = _extract_project_id(response.json())
            except Exception as error:
                LOGGER.debug("Project discovery %s failed: %s", url, error)
                continue

            if project_id:
                return project_id
    finally:
        if own_client:
            await http_client.aclose()

    LOGGER.warning(
        "Project discovery failed on all endpoints; using fallback project %s",
        config.fallback_project_id,
    )
    return config.fallback_project_id
