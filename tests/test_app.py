import gzip
import json

import httpx
import pytest

from aetherproxy.app import extract_bearer_token
from aetherproxy.constants import SOURCE_API_KEY, SOURCE_CLOUD_CODE, SOURCE_HEADER
from auth.errors import ExchangeError
from auth.google_oauth2 import TokenSet
from auth.token_store import DEFAULT_SESSION_ID, MemoryTokenStore
from tests.oauth_helpers import ExchangeRecorder, _state_from_url

PAYLOAD = {"model": "gemini-3-flash-preview", "contents": [{"parts": [{"text": "hi"}]}]}


class Upstream:
    def __init__(self, handler) -> None:
        self.handler = handler
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.handler(request)


def test_extract_bearer_token() -> None:
    assert extract_bearer_token("Bearer ya29.abc") == "ya29.abc"
    assert extract_bearer_token("bearer  ya29.abc ") == "ya29.abc"
    assert extract_bearer_token("Basic Zm9v") is None
    assert extract_bearer_token("Bearer ") is None
    assert extract_bearer_token(None) is None


@pytest.mark.asyncio
async def test_generate_without_credentials_is_401(proxy_client) -> None:
    async with proxy_client() as (client, _, _):
        response = await client.post("/generate", json=PAYLOAD)

    assert response.status_code == 401
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_generate_rejects_invalid_body(proxy_client) -> None:
    async with proxy_client(api_key="KEY") as (client, _, _):
        missing_model = await client.post("/generate", json={"contents": PAYLOAD["contents"]})
        empty_contents = await client.post("/generate", json={"model": "gemini-2.5-pro", "contents": []})
        invalid_json = await client.post(
            "/generate",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

    assert missing_model.status_code == 400
    assert empty_contents.status_code == 400
    assert invalid_json.status_code == 400


@pytest.mark.asyncio
async def test_missing_credentials_reported_before_invalid_body(proxy_client) -> None:
    async with proxy_client() as (client, _, _):
        response = await client.post("/generate", json={"contents": PAYLOAD["contents"]})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_json_is_400_without_credentials(proxy_client) -> None:
    async with proxy_client() as (client, _, _):
        response = await client.post(
            "/generate",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_generate_with_configured_api_key(proxy_client) -> None:
    upstream = Upstream(lambda request: httpx.Response(200, json={"candidates": [{"index": 0}]}))

    async with proxy_client(upstream=upstream, api_key="KEY") as (client, _, _):
        response = await client.post("/generate", json=PAYLOAD)

    assert response.status_code == 200
    assert response.json() == {"candidates": [{"index": 0}], "source": SOURCE_API_KEY}
    assert response.headers[SOURCE_HEADER] == SOURCE_API_KEY
    assert len(upstream.calls) == 1
    assert upstream.calls[0].url.path.endswith("/models/gemini-2.5-flash:generateContent")


@pytest.mark.asyncio
async def test_configured_api_key_wins_over_header(proxy_client) -> None:
    upstream = Upstream(lambda request: httpx.Response(200, json={}))

    async with proxy_client(upstream=upstream, api_key="CONFIGURED") as (client, _, _):
        await client.post("/generate", json=PAYLOAD, headers={"x-goog-api-key": "HEADER"})

    assert upstream.calls[0].url.params["key"] == "CONFIGURED"


@pytest.mark.asyncio
async def test_header_api_key_is_used(proxy_client) -> None:
    upstream = Upstream(lambda request: httpx.Response(200, json={}))

    async with proxy_client(upstream=upstream) as (client, _, _):
        response = await client.post("/generate", json=PAYLOAD, headers={"x-goog-api-key": "HEADER"})

    assert response.status_code == 200
    assert upstream.calls[0].url.params["key"] == "HEADER"


@pytest.mark.asyncio
async def test_bearer_header_routes_to_cloud_code(proxy_client) -> None:
    upstream = Upstream(lambda request: httpx.Response(200, json={"response": {}}))

    async with proxy_client(upstream=upstream) as (client, _, _):
        response = await client.post(
            "/generate",
            json=PAYLOAD,
            headers={"authorization": "Bearer ya29.header", "x-project-id": "proj-9"},
        )

    assert response.status_code == 200
    assert response.json()["source"] == SOURCE_CLOUD_CODE
    call = upstream.calls[0]
    assert call.headers["authorization"] == "Bearer ya29.header"
    assert json.loads(call.content)["request"]["model"].startswith("projects/proj-9/")


@pytest.mark.asyncio
async def test_stored_session_is_used_when_no_header(proxy_client) -> None:
    store = MemoryTokenStore()
    await store.set(DEFAULT_SESSION_ID, TokenSet("ya29.stored", "refresh", 2**62))
    upstream = Upstream(lambda request: httpx.Response(200, json={}))

    async with proxy_client(upstream=upstream, token_store=store) as (client, _, _):
        response = await client.post("/generate", json=PAYLOAD)

    assert response.status_code == 200
    assert upstream.calls[0].headers["authorization"] == "Bearer ya29.stored"


@pytest.mark.asyncio
async def test_terminal_upstream_error_is_relayed_verbatim(proxy_client) -> None:
    body = {"error": {"code": 400, "message": "Invalid contents"}}
    upstream = Upstream(lambda request: httpx.Response(400, json=body))

    async with proxy_client(upstream=upstream, api_key="KEY") as (client, _, _):
        response = await client.post(
            "/generate",
            json=PAYLOAD,
            headers={"authorization": "Bearer ya29.header"},
        )

    assert response.status_code == 400
    assert response.json() == body
    assert len(upstream.calls) == 1


@pytest.mark.asyncio
async def test_unreachable_upstream_is_503(proxy_client) -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with proxy_client(upstream=Upstream(unreachable), api_key="KEY") as (client, _, _):
        response = await client.post("/generate", json=PAYLOAD)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_streaming_generation(proxy_client) -> None:
    events = b'data: {"candidates": [1]}\n\ndata: {"candidates": [2]}\n\n'
    upstream = Upstream(
        lambda request: httpx.Response(200, content=events, headers={"content-type": "text/event-stream"})
    )

    async with proxy_client(upstream=upstream, api_key="KEY") as (client, _, _):
        response = await client.post("/generate", json={**PAYLOAD, "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.content == events
    assert upstream.calls[0].url.params["alt"] == "sse"


@pytest.mark.asyncio
async def test_compressed_upstream_stream_reaches_client_decoded(proxy_client) -> None:
    events = b'data: {"candidates": [1]}\n\n'
    upstream = Upstream(
        lambda request: httpx.Response(
            200,
            content=gzip.compress(events),
            headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
        )
    )

    async with proxy_client(upstream=upstream, api_key="KEY") as (client, _, _):
        response = await client.post("/generate", json={**PAYLOAD, "stream": True})

    assert response.status_code == 200
    assert "content-encoding" not in response.headers
    assert response.content == events


@pytest.mark.asyncio
async def test_streaming_generation_through_cloud_code(proxy_client) -> None:
    events = b'data: {"response": {"candidates": [1]}}\n\ndata: {"response": {"candidates": [2]}}\n\n'
    upstream = Upstream(
        lambda request: httpx.Response(200, content=events, headers={"content-type": "text/event-stream"})
    )

    async with proxy_client(upstream=upstream) as (client, _, _):
        response = await client.post(
            "/generate",
            json={**PAYLOAD, "stream": True},
            headers={"authorization": "Bearer ya29.header"},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers[SOURCE_HEADER] == SOURCE_CLOUD_CODE
    assert response.content == events
    call = upstream.calls[0]
    assert call.url.path == "/v1internal:streamGenerateContent"
    assert call.url.params["alt"] == "sse"
    assert json.loads(call.content)["request"]["contents"] == PAYLOAD["contents"]


@pytest.mark.asyncio
async def test_login_then_pending_status(proxy_client) -> None:
    async with proxy_client() as (client, _, callback_server):
        login = await client.post("/auth/login")
        payload = login.json()
        status = await client.get(f"/auth/status/{payload['requestId']}")

        assert _state_from_url(payload["authUrl"]) in callback_server.pending_states

    assert login.status_code == 200
    assert payload["authUrl"].startswith("https://accounts.google.com/")
    assert status.status_code == 202
    assert status.json() == {"status": "pending"}


@pytest.mark.asyncio
async def test_status_for_unknown_request_is_404(proxy_client) -> None:
    async with proxy_client() as (client, _, _):
        response = await client.get("/auth/status/does-not-exist")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_login_complete_flow(proxy_client) -> None:
    store = MemoryTokenStore()

    async with proxy_client(token_store=store) as (client, _, callback_server):
        payload = (await client.post("/auth/login")).json()
        await callback_server.complete(code="c1", state=_state_from_url(payload["authUrl"]), error=None)
        status = await client.get(f"/auth/status/{payload['requestId']}")

    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "complete"
    assert body["access_token"] == "access-c1"
    assert body["refresh_token"] == "refresh-c1"
    assert body["project_id"] == "project-access-c1"
    assert body["email"] == "access-c1@example.com"
    assert (await store.get(DEFAULT_SESSION_ID)).access_token == "access-c1"


@pytest.mark.asyncio
async def test_exchange_failure_is_reported_with_body(proxy_client) -> None:
    failing = ExchangeRecorder(
        fail_with=ExchangeError("Token exchange failed", body='{"error":"invalid_grant"}', status=400)
    )

    async with proxy_client(exchange=failing) as (client, _, callback_server):
        payload = (await client.post("/auth/login")).json()
        await callback_server.complete(code="c1", state=_state_from_url(payload["authUrl"]), error=None)
        status = await client.get(f"/auth/status/{payload['requestId']}")

    assert status.status_code == 502
    body = status.json()
    assert body["status"] == "failed"
    assert body["error_type"] == "ExchangeError"
    assert body["body"] == '{"error":"invalid_grant"}'


@pytest.mark.asyncio
async def test_timed_out_authorization_is_504(proxy_client) -> None:
    async with proxy_client(auth_timeout_seconds=0.05, poll_window_seconds=1) as (client, _, _):
        payload = (await client.post("/auth/login")).json()
        status = await client.get(f"/auth/status/{payload['requestId']}")

    assert status.status_code == 504
    assert status.json()["error_type"] == "AuthorizationTimeoutError"


@pytest.mark.asyncio
async def test_cors_headers_for_allowed_origin(proxy_client) -> None:
    async with proxy_client() as (client, _, _):
        response = await client.get("/models", headers={"origin": "http://localhost:3000"})
        preflight = await client.options("/generate", headers={"origin": "http://localhost:3000"})
        foreign = await client.get("/models", headers={"origin": "https://evil.example"})

    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert preflight.status_code == 204
    assert "x-goog-api-key" in preflight.headers["access-control-allow-headers"]
    assert "access-control-allow-origin" not in foreign.headers
