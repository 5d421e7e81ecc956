import asyncio
import gzip
import json

import httpx
import pytest

from aetherproxy.constants import SOURCE_API_KEY, SOURCE_HEADER
from aetherproxy.relay import relay, relay_stream, relay_unary
from aetherproxy.router import GenerationResult


class RecordingStream(httpx.AsyncByteStream):
    def __init__(self, chunks: list[bytes], events: list[str], *, fail_after: int | None = None) -> None:
        self.chunks = chunks
        self.events = events
        self.fail_after = fail_after
        self.closed = False

    async def __aiter__(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise httpx.ReadError("connection reset")
            self.events.append(f"sent:{chunk.decode(errors='replace')}")
            yield chunk
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        self.closed = True


def _result(stream, *, status_code: int = 200, headers=None, is_stream: bool = True) -> GenerationResult:
    response = httpx.Response(status_code, headers=headers, stream=stream)
    return GenerationResult(source=SOURCE_API_KEY, response=response, stream=is_stream)


@pytest.mark.asyncio
async def test_stream_chunks_are_forwarded_as_they_arrive() -> None:
    events: list[str] = []
    upstream = RecordingStream([b"data: 1\n\n", b"data: 2\n\n", b"data: 3\n\n"], events)

    response = relay_stream(_result(upstream))
    async for chunk in response.body_iterator:
        events.append(f"recv:{chunk.decode()}")

    assert events == [
        "sent:data: 1\n\n",
        "recv:data: 1\n\n",
        "sent:data: 2\n\n",
        "recv:data: 2\n\n",
        "sent:data: 3\n\n",
        "recv:data: 3\n\n",
    ]
    assert upstream.closed


@pytest.mark.asyncio
async def test_stream_response_headers() -> None:
    response = relay_stream(_result(RecordingStream([], [])))

    assert response.media_type == "text/event-stream"
    assert response.headers[SOURCE_HEADER] == SOURCE_API_KEY
    assert response.headers["cache-control"] == "no-cache"


@pytest.mark.asyncio
async def test_stream_abort_is_not_disguised_as_completion() -> None:
    events: list[str] = []
    upstream = RecordingStream([b"data: 1\n\n", b"data: 2\n\n"], events, fail_after=1)
    received: list[bytes] = []

    response = relay_stream(_result(upstream))
    with pytest.raises(httpx.ReadError):
        async for chunk in response.body_iterator:
            received.append(chunk)

    assert received == [b"data: 1\n\n"]
    assert upstream.closed


@pytest.mark.asyncio
async def test_unary_response_is_tagged_with_source() -> None:
    result = _result(
        httpx.ByteStream(json.dumps({"candidates": []}).encode()),
        headers={"content-type": "application/json"},
        is_stream=False,
    )

    response = await relay(result)

    assert response.status_code == 200
    assert json.loads(response.body) == {"candidates": [], "source": SOURCE_API_KEY}
    assert response.headers[SOURCE_HEADER] == SOURCE_API_KEY


@pytest.mark.asyncio
async def test_unary_non_json_body_passes_through() -> None:
    result = _result(
        httpx.ByteStream(b"plain text"),
        headers={"content-type": "text/plain"},
        is_stream=False,
    )

    response = await relay_unary(result)

    assert response.body == b"plain text"
    assert response.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_compressed_stream_is_decoded_before_relay() -> None:
    events = b'data: {"candidates": [1]}\n\ndata: {"candidates": [2]}\n\n'
    compressed = gzip.compress(events)
    upstream = RecordingStream([compressed[:10], compressed[10:]], [])

    response = relay_stream(_result(upstream, headers={"content-encoding": "gzip"}))
    received = b"".join([chunk async for chunk in response.body_iterator])

    assert received == events
    assert "content-encoding" not in response.headers
