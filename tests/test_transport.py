"""Tests for AnthropicTransport: payload building, response parsing and retries."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from techne.context import CacheBlock, Tier
from techne.engine.retry import RetryPolicy
from techne.engine.schemas import (
    ConversationTurn,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from techne.engine.transport import (
    MAX_CACHE_BREAKPOINTS,
    AnthropicTransport,
    TransportError,
    cache_control_for,
)

OK_BODY = {
    "id": "msg_1",
    "type": "message",
    "role": "assistant",
    "content": [
        {"type": "thinking", "thinking": "Let me write App.tsx", "signature": "sig-abc"},
        {"type": "text", "text": "Writing the app."},
        {"type": "tool_use", "id": "toolu_1", "name": "write_file", "input": {"path": "src/App.tsx", "content": "x"}},
        {"type": "server_tool_use", "id": "srv_1", "name": "web_search", "input": {}},
    ],
    "stop_reason": "tool_use",
    "usage": {
        "input_tokens": 100,
        "output_tokens": 50,
        "cache_creation_input_tokens": 2000,
        "cache_read_input_tokens": None,
    },
}


def _block(tier: Tier, ttl: int | None, text: str = "context") -> CacheBlock:
    return CacheBlock(tier=tier, text=text, token_estimate=2000, cache_ttl=ttl)


def _history() -> list[ConversationTurn]:
    return [ConversationTurn(role="user", blocks=(TextBlock(text="create a todo app"),))]


class Api:
    """Scripted Messages API: returns the queued responses in order."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _transport(settings, api: Api, attempts: int = 3) -> AnthropicTransport:
    http = httpx.AsyncClient(base_url="https://api.test", transport=httpx.MockTransport(api))
    return AnthropicTransport(
        settings, retry=RetryPolicy(max_attempts=attempts, base_delay=0, jitter=False), http=http
    )


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


def test_cache_control_for():
    assert cache_control_for(None) is None
    assert cache_control_for(300) == {"type": "ephemeral", "ttl": "5m"}
    assert cache_control_for(3600) == {"type": "ephemeral", "ttl": "1h"}


def test_payload_marks_cacheable_tiers(settings):
    transport = AnthropicTransport(settings)
    blocks = [
        _block(Tier.STABLE, 3600),
        _block(Tier.SEMI_STABLE, 1800),
        _block(Tier.VOLATILE, None),
    ]

    payload = transport.build_payload(blocks, [{"name": "write_file"}], _history())

    system = payload["system"]
    assert system[0]["cache_control"] == {"type": "ephemeral", "ttl": "1h"}
    assert system[1]["cache_control"] == {"type": "ephemeral", "ttl": "5m"}
    assert "cache_control" not in system[2]
    assert payload["tools"] == [{"name": "write_file"}]
    assert payload["messages"][-1]["content"][-1]["cache_control"] == {"type": "ephemeral"}


def test_payload_respects_breakpoint_limit(settings):
    transport = AnthropicTransport(settings)
    blocks = [_block(Tier.STABLE, 3600, f"part {i}") for i in range(6)]

    payload = transport.build_payload(blocks, [], _history())

    marked = [b for b in payload["system"] if "cache_control" in b]
    assert len(marked) == MAX_CACHE_BREAKPOINTS - 1
    assert "tools" not in payload


def test_payload_does_not_mutate_history(settings):
    transport = AnthropicTransport(settings)
    history = _history()
    transport.build_payload([], [], history)
    assert "cache_control" not in history[0].to_api()["content"][0]


def test_payload_thinking_modes(settings):
    manual = AnthropicTransport(settings).build_payload([], [], _history())
    assert manual["thinking"] == {"type": "enabled", "budget_tokens": settings.thinking_budget}
    assert "temperature" not in manual

    adaptive = AnthropicTransport(settings.model_copy(update={"thinking_mode": "adaptive"}))
    assert adaptive.build_payload([], [], _history())["thinking"] == {"type": "adaptive"}

    off = AnthropicTransport(settings.model_copy(update={"thinking_mode": "off"}))
    payload = off.build_payload([], [], _history())
    assert "thinking" not in payload
    assert payload["temperature"] == settings.temperature


def test_payload_replays_thinking_and_results(settings):
    history = [
        *_history(),
        ConversationTurn(
            role="assistant",
            blocks=(
                ThinkingBlock(thinking="plan", signature="sig"),
                ToolUseBlock(id="t1", name="read_file", input={"path": "a"}),
            ),
        ),
        ConversationTurn(role="user", blocks=(ToolResultBlock(tool_use_id="t1", content="ok"),)),
    ]
    payload = AnthropicTransport(settings).build_payload([], [], history)

    assert payload["messages"][1]["content"][0] == {"type": "thinking", "thinking": "plan", "signature": "sig"}
    last = payload["messages"][2]["content"][0]
    assert last["type"] == "tool_result"
    assert last["cache_control"] == {"type": "ephemeral"}


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def test_parse_response_keeps_order_and_signatures():
    turn = AnthropicTransport.parse_response(OK_BODY)

    assert [b.type for b in turn.blocks] == ["thinking", "text", "tool_use"]
    assert turn.blocks[0].signature == "sig-abc"
    assert turn.tool_uses[0].input == {"path": "src/App.tsx", "content": "x"}
    assert turn.stop_reason == "tool_use"
    assert turn.usage.cache_creation_input_tokens == 2000
    assert turn.usage.cache_read_input_tokens == 0


def test_parse_response_malformed():
    with pytest.raises(TransportError):
        AnthropicTransport.parse_response({"content": [{"type": "tool_use", "name": "x"}]})


# ---------------------------------------------------------------------------
# Calls and retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_turn_posts_messages(settings):
    api = Api(httpx.Response(200, json=OK_BODY))
    turn = await _transport(settings, api).send_turn([_block(Tier.STABLE, 3600)], [], _history())

    assert turn.tool_uses[0].id == "toolu_1"
    request = api.requests[0]
    assert request.url.path == "/v1/messages"
    body = json.loads(request.content)
    assert body["model"] == settings.model
    assert body["messages"][0]["role"] == "user"


@pytest.mark.asyncio
async def test_retries_transient_status(settings):
    api = Api(
        httpx.Response(529, json={"error": {"type": "overloaded_error", "message": "Overloaded"}}),
        httpx.ConnectError("connection reset"),
        httpx.Response(200, json=OK_BODY),
    )
    turn = await _transport(settings, api).send_turn([], [], _history())
    assert turn.stop_reason == "tool_use"
    assert len(api.requests) == 3


@pytest.mark.asyncio
async def test_non_retryable_status_fails_immediately(settings):
    api = Api(
        httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}}),
        httpx.Response(200, json=OK_BODY),
    )
    with pytest.raises(TransportError) as exc_info:
        await _transport(settings, api).send_turn([], [], _history())

    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == 400
    assert "invalid_request_error" in str(exc_info.value)
    assert len(api.requests) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise_retryable_error(settings):
    api = Api(*(httpx.Response(503, text="unavailable") for _ in range(2)))
    with pytest.raises(TransportError) as exc_info:
        await _transport(settings, api, attempts=2).send_turn([], [], _history())
    assert exc_info.value.retryable is True
    assert len(api.requests) == 2


@pytest.mark.asyncio
async def test_html_body_on_200_is_retried(settings):
    api = Api(
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=OK_BODY),
    )
    turn = await _transport(settings, api).send_turn([], [], _history())
    assert turn.stop_reason == "tool_use"
    assert len(api.requests) == 2


@pytest.mark.asyncio
async def test_html_body_on_200_raises_transport_error(settings):
    api = Api(*(httpx.Response(200, text="<html>gateway</html>") for _ in range(2)))
    with pytest.raises(TransportError) as exc_info:
        await _transport(settings, api, attempts=2).send_turn([], [], _history())
    assert exc_info.value.retryable is True
    assert "gateway" in str(exc_info.value)


def test_parse_response_rejects_non_object():
    with pytest.raises(TransportError):
        AnthropicTransport.parse_response(["not", "a", "message"])


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured(settings):
    api = Api(
        httpx.Response(429, headers={"retry-after": "7"}, json={"error": {"type": "rate_limit_error"}}),
        httpx.Response(200, json=OK_BODY),
    )
    with patch("techne.engine.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await _transport(settings, api).send_turn([], [], _history())
    sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_send_turn_requires_start(settings):
    with pytest.raises(RuntimeError):
        await AnthropicTransport(settings).send_turn([], [], _history())


@pytest.mark.asyncio
async def test_start_prefers_auth_token(settings):
    transport = AnthropicTransport(
        settings.model_copy(update={"anthropic_auth_token": "tok", "anthropic_api_key": "key"})
    )
    await transport.start()
    try:
        headers = transport._http.headers
        assert headers["authorization"] == "Bearer tok"
        assert "x-api-key" not in headers
        assert headers["anthropic-version"] == "2023-06-01"
    finally:
        await transport.close()
    assert transport._http is None
