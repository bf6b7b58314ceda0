"""
Tests for the reasoning client against a local fake completion endpoint.

Verifies:
- Request body and headers
- Reply and token usage parsing
- Transport errors carry the HTTP status and provider message
- Streaming: delta parsing, [DONE], malformed lines
"""
import asyncio
import json
from contextlib import asynccontextmanager

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from voice_agent.errors import EmptyResponseError, ErrorCategory, TransportError, classify_error
from voice_agent.reasoning import ChatMessage, CompletionOptions, ReasoningClient


MESSAGES = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="What color is the sky?"),
]


@asynccontextmanager
async def fake_provider(handler, **client_kwargs):
    requests = []

    async def recording_handler(request):
        requests.append({"headers": dict(request.headers), "body": await request.json()})
        return await handler(request)

    app = web.Application()
    app.router.add_post("/api/v1/chat/completions", recording_handler)
    server = TestServer(app)
    await server.start_server()
    client = ReasoningClient("test-key", base_url=str(server.make_url("/api/v1")), **client_kwargs)
    try:
        yield client, requests
    finally:
        await client.close()
        await server.close()


def completion(content, usage=None):
    payload = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage:
        payload["usage"] = usage
    return payload


@pytest.mark.asyncio
async def test_complete_returns_trimmed_reply():
    """Test that complete() returns the trimmed reply and usage."""
    async def handler(request):
        return web.json_response(completion(
            "  Blue.  ",
            usage={"prompt_tokens": 12, "completion_tokens": 2, "total_tokens": 14},
        ))

    async with fake_provider(handler) as (client, requests):
        result = await client.complete(MESSAGES)

    assert result.content == "Blue."
    assert result.usage.total_tokens == 14
    assert result.usage.prompt_tokens == 12


@pytest.mark.asyncio
async def test_request_body_and_headers():
    """Test the request body and headers."""
    async def handler(request):
        return web.json_response(completion("ok"))

    async with fake_provider(handler, app_title="Test App", referer="https://example.test") as (client, requests):
        await client.complete(
            MESSAGES,
            model="some/model",
            options=CompletionOptions(max_tokens=50, temperature=0.2, top_p=0.5, extra={"seed": 7}),
        )

    body = requests[0]["body"]
    headers = requests[0]["headers"]
    assert body["model"] == "some/model"
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "What color is the sky?"},
    ]
    assert body["max_tokens"] == 50
    assert body["temperature"] == 0.2
    assert body["top_p"] == 0.5
    assert body["stream"] is False
    assert body["seed"] == 7
    assert headers["Authorization"] == "Bearer test-key"
    assert headers["X-Title"] == "Test App"
    assert headers["HTTP-Referer"] == "https://example.test"


@pytest.mark.asyncio
async def test_default_model_and_options():
    """Test default model and options."""
    async def handler(request):
        return web.json_response(completion("ok"))

    async with fake_provider(handler, default_model="default/model") as (client, requests):
        await client.complete(MESSAGES)

    body = requests[0]["body"]
    assert body["model"] == "default/model"
    assert body["max_tokens"] == 1000
    assert body["temperature"] == 0.7
    assert body["top_p"] == 0.9
    assert "HTTP-Referer" not in requests[0]["headers"]


def test_endpoint_strips_trailing_slash():
    """Test that the endpoint strips a trailing slash from the base URL."""
    client = ReasoningClient("k", base_url="https://llm.example/api/v1/")
    assert client.endpoint == "https://llm.example/api/v1/chat/completions"


@pytest.mark.asyncio
async def test_http_error_carries_status_and_message():
    """Test that HTTP errors carry the status and provider message."""
    async def handler(request):
        return web.json_response({"error": {"message": "Rate limit exceeded"}}, status=429)

    async with fake_provider(handler) as (client, _):
        with pytest.raises(TransportError) as exc_info:
            await client.complete(MESSAGES)

    error = exc_info.value
    assert error.status == 429
    assert str(error) == "LLM API error: 429 - Rate limit exceeded"
    assert classify_error(error) == ErrorCategory.RATE_LIMITED


@pytest.mark.asyncio
async def test_http_error_without_json_uses_reason():
    """Test HTTP errors whose body is not JSON."""
    async def handler(request):
        return web.Response(status=500, text="<html>oops</html>")

    async with fake_provider(handler) as (client, _):
        with pytest.raises(TransportError) as exc_info:
            await client.complete(MESSAGES)

    assert exc_info.value.status == 500
    assert "Internal Server Error" in str(exc_info.value)


@pytest.mark.asyncio
async def test_no_choices_is_empty_response():
    """Test that a response without choices raises EmptyResponseError."""
    async def handler(request):
        return web.json_response({"choices": []})

    async with fake_provider(handler) as (client, _):
        with pytest.raises(EmptyResponseError):
            await client.complete(MESSAGES)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"choices": ["oops"]},
    {"choices": [{"message": "oops"}]},
    {"choices": [{"message": {"content": 42}}]},
    ["not", "an", "object"],
])
async def test_malformed_choices_are_empty_response(body):
    """Test that choices of the wrong shape raise EmptyResponseError."""
    async def handler(request):
        return web.json_response(body)

    async with fake_provider(handler) as (client, _):
        with pytest.raises(EmptyResponseError):
            await client.complete(MESSAGES)


@pytest.mark.asyncio
async def test_connection_failure_is_network_error():
    """Test that a refused connection is classified as a network error."""
    client = ReasoningClient("k", base_url="http://127.0.0.1:1/api/v1", timeout_seconds=2)
    try:
        with pytest.raises(TransportError) as exc_info:
            await client.complete(MESSAGES)
    finally:
        await client.close()

    assert exc_info.value.status is None
    assert classify_error(exc_info.value) == ErrorCategory.NETWORK_ERROR


@pytest.mark.asyncio
async def test_timeout_is_network_error():
    """Test that a timeout is classified as a network error."""
    async def handler(request):
        await asyncio.sleep(1)
        return web.json_response(completion("late"))

    async with fake_provider(handler, timeout_seconds=0.1) as (client, _):
        with pytest.raises(TransportError) as exc_info:
            await client.complete(MESSAGES)

    assert exc_info.value.status is None


async def stream_lines(request, lines):
    resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
    await resp.prepare(request)
    for line in lines:
        await resp.write((line + "\n").encode("utf-8"))
    await resp.write_eof()
    return resp


def delta(text):
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


@pytest.mark.asyncio
async def test_stream_yields_deltas_until_done():
    """Test that streaming yields deltas until [DONE]."""
    async def handler(request):
        return await stream_lines(request, [
            ": keep-alive comment",
            delta("The sky "),
            "",
            "data: {not json",
            delta("is blue."),
            'data: {"choices": [{"delta": {}}]}',
            "data: [DONE]",
            delta("never seen"),
        ])

    async with fake_provider(handler) as (client, requests):
        parts = [part async for part in client.stream_complete(MESSAGES)]

    assert parts == ["The sky ", "is blue."]
    assert requests[0]["body"]["stream"] is True


@pytest.mark.asyncio
async def test_stream_ends_when_connection_closes():
    """Test that a stream without [DONE] ends when the connection closes."""
    async def handler(request):
        return await stream_lines(request, [delta("partial")])

    async with fake_provider(handler) as (client, _):
        parts = [part async for part in client.stream_complete(MESSAGES)]

    assert parts == ["partial"]


@pytest.mark.asyncio
async def test_stream_http_error():
    """Test HTTP errors on the streaming endpoint."""
    async def handler(request):
        return web.json_response({"error": "invalid model"}, status=400)

    async with fake_provider(handler) as (client, _):
        with pytest.raises(TransportError) as exc_info:
            async for _ in client.stream_complete(MESSAGES):
                pass

    assert str(exc_info.value) == "LLM API error: 400 - invalid model"


@pytest.mark.asyncio
async def test_borrowed_session_is_not_closed():
    """Test that close() leaves a borrowed session open."""
    session = aiohttp.ClientSession()
    try:
        client = ReasoningClient("k", session=session)
        await client.close()
        assert session.closed is False
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_closed_client_refuses_requests():
    """Test that a closed client raises TransportError instead of opening a new session."""
    client = ReasoningClient("k", base_url="http://127.0.0.1:1/api/v1")
    await client.close()

    with pytest.raises(TransportError) as exc_info:
        await client.complete(MESSAGES)
    with pytest.raises(TransportError):
        async for _ in client.stream_complete(MESSAGES):
            pass

    assert exc_info.value.status is None
    assert str(exc_info.value) == "LLM API error: client is closed"
    assert client._session is None
