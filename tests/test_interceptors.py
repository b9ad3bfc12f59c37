from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from starlette.datastructures import Headers

from cliproxy_middleware.errors import InvalidRequestError
from cliproxy_middleware.interceptors import (
    TokenCounter,
    estimate_input_tokens,
    rewrite_chat_completions_body,
    rewrite_messages_body,
)
from cliproxy_middleware.model_mapping import FLASH_MODEL, ModelTranslator
from cliproxy_middleware.proxy import UpstreamProxy

TRANSLATOR = ModelTranslator()


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def test_messages_body_without_changes_keeps_original_bytes() -> None:
    body = b'{ "model" : "unknown-model", "messages": [], "tools": [{"name": "t", "input_schema": {"type": "object"}}] }'

    assert rewrite_messages_body(body, TRANSLATOR) is body


def test_messages_body_invalid_json_is_passed_through() -> None:
    body = b"{definitely not json"

    assert rewrite_messages_body(body, TRANSLATOR) is body
    assert rewrite_messages_body(b"[1, 2]", TRANSLATOR) == b"[1, 2]"


def test_messages_body_model_is_mapped_and_other_fields_preserved() -> None:
    payload = {
        "model": "claude-haiku-4-5-20251001",
        "max_tokens": 64,
        "metadata": {"user_id": "u-1"},
        "messages": [{"role": "user", "content": "héllo"}],
    }

    rewritten = json.loads(rewrite_messages_body(json.dumps(payload).encode(), TRANSLATOR))

    assert rewritten == {**payload, "model": FLASH_MODEL}


def test_messages_body_tool_schemas_are_normalized() -> None:
    payload = {
        "model": "mystery-model",
        "tools": [
            {"name": "no_schema"},
            "not-a-tool",
            {
                "name": "search",
                "input_schema": {
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "minLength": 1, "pattern": "^x"},
                        "filters": {"$ref": "#/$defs/filters"},
                    },
                    "$defs": {"filters": {"type": "object"}},
                },
            },
        ],
    }

    rewritten = json.loads(rewrite_messages_body(json.dumps(payload).encode(), TRANSLATOR))

    assert rewritten["model"] == "mystery-model"
    assert rewritten["tools"][:2] == [{"name": "no_schema"}, "not-a-tool"]
    assert rewritten["tools"][2]["input_schema"] == {
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 1, "pattern": "^x"},
            "filters": {},
        },
    }


def test_chat_completions_body_leaves_model_and_non_tool_requests_alone() -> None:
    no_tools = b'{"model": "claude-opus-4-5-20251101", "messages": []}'
    clean_tools = _compact(
        {
            "model": "gpt-4o",
            "tools": [{"type": "function", "function": {"name": "f", "parameters": {"type": "object"}}}],
        }
    ).encode()

    assert rewrite_chat_completions_body(no_tools) is no_tools
    assert rewrite_chat_completions_body(clean_tools) is clean_tools


def test_chat_completions_body_normalizes_function_parameters() -> None:
    payload = {
        "model": "gpt-4o",
        "tools": [
            {"type": "function", "function": {"name": "bare"}},
            {
                "type": "function",
                "function": {
                    "name": "lookup",
                    "parameters": {
                        "type": "object",
                        "properties": {"ids": {"type": "array", "items": {"type": ["integer", "null"]}}},
                        "if": {"required": ["ids"]},
                    },
                },
            },
        ],
    }

    rewritten = json.loads(rewrite_chat_completions_body(json.dumps(payload).encode()))

    assert rewritten["model"] == "gpt-4o"
    assert rewritten["tools"][0] == {"type": "function", "function": {"name": "bare"}}
    assert rewritten["tools"][1]["function"]["parameters"] == {
        "type": "object",
        "properties": {"ids": {"type": "array", "items": {"type": "integer"}}},
    }


def test_estimate_counts_system_messages_and_tools() -> None:
    payload = {
        "model": "a-model-name-that-is-not-counted",
        "system": "s" * 30,
        "messages": [{"role": "user", "content": "x" * 100}],
        "tools": [{"name": "t"}],
    }
    body = _compact(payload).encode()
    chars = sum(len(_compact(payload[key])) for key in ("system", "messages", "tools"))

    assert estimate_input_tokens(body) == int(chars / 4)
    assert estimate_input_tokens(body, 2.0) == int(chars / 2)


def test_estimate_measures_fields_as_sent() -> None:
    body = '{ "messages" : [ "\\u00e9" ],\n  "system": "hé", "model": "m" }'.encode()

    # [ "é" ] is 12 bytes as sent and "hé" is 5 bytes in UTF-8.
    assert estimate_input_tokens(body, 1.0) == 17


def test_estimate_accepts_lone_surrogate_escapes() -> None:
    assert estimate_input_tokens(b'{"messages":["\\ud83d"]}', 1.0) == 10


def test_messages_body_with_lone_surrogate_is_reserialized() -> None:
    body = b'{"model":"claude-opus-4-5-20251101","messages":[{"content":"x\\ud83d"}]}'

    rewritten = rewrite_messages_body(body, TRANSLATOR)

    assert b"\\ud83d" in rewritten
    assert json.loads(rewritten)["messages"][0]["content"] == "x\ud83d"


def test_estimate_has_a_floor_of_one_for_non_empty_input() -> None:
    assert estimate_input_tokens(b'{"messages":[]}') == 1
    assert estimate_input_tokens(b'{"model":"m"}') == 0
    assert estimate_input_tokens(b"xy") == 1
    assert estimate_input_tokens(b"") == 0


def _count(
    handler: Any,
    body: bytes,
    headers: dict[str, str] | None = None,
    *,
    api_key: str | None = None,
) -> int:
    async def _run() -> int:
        proxy = UpstreamProxy("http://upstream.test", transport=httpx.MockTransport(handler))
        counter = TokenCounter(proxy=proxy, translator=TRANSLATOR, api_key=api_key)
        try:
            return await counter.count(body, Headers(headers or {}))
        finally:
            await proxy.close()

    return asyncio.run(_run())


COUNT_BODY = json.dumps(
    {
        "model": "claude-haiku-4-5-20251001",
        "messages": [{"role": "user", "content": "count these tokens for me"}],
        "tools": [
            {"name": "t", "input_schema": {"type": "object", "propertyNames": {"pattern": "^a"}}}
        ],
    }
).encode()


def test_token_counter_prefers_upstream_and_forwards_normalized_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"input_tokens": 77})

    tokens = _count(
        handler,
        COUNT_BODY,
        {"x-api-key": "client-key", "anthropic-version": "2023-06-01"},
        api_key="server-key",
    )

    assert tokens == 77
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/messages/count_tokens"
    assert request.headers["x-api-key"] == "client-key"
    assert "authorization" not in request.headers
    assert request.headers["anthropic-version"] == "2023-06-01"
    forwarded = json.loads(request.content)
    assert forwarded["model"] == FLASH_MODEL
    assert forwarded["tools"][0]["input_schema"] == {"type": "object"}


def test_token_counter_header_precedence() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"input_tokens": 1})

    _count(handler, COUNT_BODY, {"authorization": "Bearer client", "x-api-key": "k"})
    _count(handler, COUNT_BODY, {}, api_key="server-key")
    _count(handler, COUNT_BODY, {})

    assert seen[0].headers["authorization"] == "Bearer client"
    assert "x-api-key" not in seen[0].headers
    assert seen[1].headers["authorization"] == "Bearer server-key"
    assert "authorization" not in seen[2].headers


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(401, json={"error": "unauthorized"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"tokens": 5}),
        httpx.Response(200, json={"input_tokens": "12"}),
        httpx.Response(200, json=[1, 2]),
    ],
)
def test_token_counter_falls_back_on_unusable_upstream_answers(
    response: httpx.Response,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    assert _count(handler, COUNT_BODY) == estimate_input_tokens(COUNT_BODY)


def test_token_counter_falls_back_when_upstream_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _count(handler, COUNT_BODY) == estimate_input_tokens(COUNT_BODY)


@pytest.mark.parametrize(
    ("body", "message"),
    [
        (b"{oops", "Invalid JSON"),
        (b'"just a string"', "Expected a JSON object request body."),
    ],
)
def test_token_counter_rejects_invalid_bodies(body: bytes, message: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    with pytest.raises(InvalidRequestError) as excinfo:
        _count(handler, body)

    assert excinfo.value.message == message
    assert excinfo.value.status_code == 400
