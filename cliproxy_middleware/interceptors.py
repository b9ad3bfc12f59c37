from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from starlette.datastructures import Headers

from cliproxy_middleware.errors import InvalidRequestError
from cliproxy_middleware.model_mapping import ModelTranslator
from cliproxy_middleware.proxy import UpstreamProxy
from cliproxy_middleware.schema_normalizer import normalize_schema

COUNT_TOKENS_PATH = "/v1/messages/count_tokens"
TOKEN_ESTIMATE_FIELDS = ("system", "messages", "tools")
DEBUG_BODY_LOG_LIMIT = 500

_JSON_WHITESPACE = re.compile(r"[ \t\n\r]*")

logger = logging.getLogger("uvicorn.error")


def _dumps(value: Any) -> str:
    # ASCII output keeps lone surrogates as \uXXXX escapes.
    return json.dumps(value, separators=(",", ":"))


def _dump_bytes(value: Any) -> bytes:
    return _dumps(value).encode("ascii")


def _skip_whitespace(text: str, index: int) -> int:
    return _JSON_WHITESPACE.match(text, index).end()


def _raw_members(text: str) -> dict[str, str]:
    """Top-level members of a well-formed JSON object, as their raw value text."""
    decoder = json.JSONDecoder()
    members: dict[str, str] = {}
    index = _skip_whitespace(text, 0) + 1
    while True:
        index = _skip_whitespace(text, index)
        if text[index] == "}":
            return members
        key, index = decoder.raw_decode(text, index)
        index = _skip_whitespace(text, _skip_whitespace(text, index) + 1)
        _, end = decoder.raw_decode(text, index)
        members[key] = text[index:end]
        index = _skip_whitespace(text, end)
        if text[index] == ",":
            index += 1


def _load_object(body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _normalize_in_place(schema: dict[str, Any]) -> bool:
    before = _dumps(schema)
    normalize_schema(schema)
    return _dumps(schema) != before


def _has_tools(payload: dict[str, Any]) -> bool:
    tools = payload.get("tools")
    return isinstance(tools, list) and bool(tools)


def apply_model_mapping(
    payload: dict[str, Any], translator: ModelTranslator, *, route: str
) -> bool:
    model = payload.get("model")
    if not isinstance(model, str):
        return False
    mapped = translator.map_model(model)
    if mapped == model:
        return False
    payload["model"] = mapped
    logger.debug("model_mapped route=%s from=%s to=%s", route, model, mapped)
    return True


def normalize_anthropic_tools(payload: dict[str, Any], *, route: str) -> bool:
    if not _has_tools(payload):
        return False
    modified = False
    for tool in payload["tools"]:
        if not isinstance(tool, dict):
            continue
        schema = tool.get("input_schema")
        if isinstance(schema, dict) and _normalize_in_place(schema):
            modified = True
            logger.debug("tool_schema_normalized route=%s tool=%s", route, tool.get("name"))
    return modified


def normalize_openai_tools(payload: dict[str, Any], *, route: str) -> bool:
    if not _has_tools(payload):
        return False
    modified = False
    for tool in payload["tools"]:
        if not isinstance(tool, dict):
            continue
        function = tool.get("function")
        if not isinstance(function, dict):
            continue
        parameters = function.get("parameters")
        if isinstance(parameters, dict) and _normalize_in_place(parameters):
            modified = True
            logger.debug(
                "tool_schema_normalized route=%s tool=%s", route, function.get("name")
            )
    return modified


def rewrite_messages_body(body: bytes, translator: ModelTranslator) -> bytes:
    payload = _load_object(body)
    if payload is None:
        return body
    logger.debug(
        "messages_request keys=%s has_tools=%s", ",".join(payload), "tools" in payload
    )
    modified = apply_model_mapping(payload, translator, route="messages")
    if normalize_anthropic_tools(payload, route="messages"):
        modified = True
    if not modified:
        return body
    rewritten = _dump_bytes(payload)
    logger.debug("messages_request_modified bytes=%d->%d", len(body), len(rewritten))
    return rewritten


def rewrite_chat_completions_body(body: bytes) -> bytes:
    payload = _load_object(body)
    if payload is None or not _has_tools(payload):
        return body
    if not normalize_openai_tools(payload, route="chat"):
        return body
    rewritten = _dump_bytes(payload)
    logger.debug("chat_request_modified bytes=%d->%d", len(body), len(rewritten))
    return rewritten


def estimate_input_tokens(body: bytes, chars_per_token: float = 4.0) -> int:
    """Rough local token estimate: serialized size of system/messages/tools over a ratio.

    Sizes are the UTF-8 byte lengths of the fields exactly as they appear in the
    request, whitespace and escapes included. A body that is not a JSON object is
    measured whole. Non-empty input yields at least one token.
    """
    if _load_object(body) is None:
        total_chars = len(body)
    else:
        members = _raw_members(body.decode(json.detect_encoding(body), "surrogatepass"))
        total_chars = sum(
            len(members[field].encode("utf-8", "surrogatepass"))
            for field in TOKEN_ESTIMATE_FIELDS
            if field in members
        )
    estimated = int(total_chars / chars_per_token)
    if total_chars > 0 and estimated == 0:
        estimated = 1
    return estimated


def _build_count_headers(
    incoming_headers: Headers, api_key: str | None
) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    authorization = incoming_headers.get("authorization")
    x_api_key = incoming_headers.get("x-api-key")
    if authorization:
        headers["Authorization"] = authorization
    elif x_api_key:
        headers["x-api-key"] = x_api_key
    elif api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    version = incoming_headers.get("anthropic-version")
    if version:
        headers["anthropic-version"] = version
    return headers


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


class TokenCounter:
    def __init__(
        self,
        *,
        proxy: UpstreamProxy,
        translator: ModelTranslator,
        api_key: str | None = None,
        chars_per_token: float = 4.0,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._proxy = proxy
        self._translator = translator
        self._api_key = api_key
        self._chars_per_token = chars_per_token
        self._timeout_seconds = timeout_seconds

    async def count(self, body: bytes, incoming_headers: Headers) -> int:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise InvalidRequestError("Invalid JSON") from exc
        if not isinstance(payload, dict):
            raise InvalidRequestError("Expected a JSON object request body.")

        modified = apply_model_mapping(payload, self._translator, route="token_count")
        if normalize_anthropic_tools(payload, route="token_count"):
            modified = True
        upstream_body = _dump_bytes(payload) if modified else body

        upstream_tokens = await self._count_upstream(upstream_body, incoming_headers)
        if upstream_tokens is not None:
            return upstream_tokens

        # The estimate measures the inbound body, before tool normalization.
        estimated = estimate_input_tokens(body, self._chars_per_token)
        logger.debug(
            "token_count_fallback model=%s estimated_tokens=%d",
            payload.get("model"),
            estimated,
        )
        return estimated

    async def _count_upstream(
        self, body: bytes, incoming_headers: Headers
    ) -> int | None:
        try:
            response = await self._proxy.request(
                "POST",
                COUNT_TOKENS_PATH,
                content=body,
                headers=_build_count_headers(incoming_headers, self._api_key),
                timeout=self._timeout_seconds,
            )
        except httpx.RequestError as exc:
            logger.debug(
                "token_count_upstream_failed error_type=%s error=%s",
                exc.__class__.__name__,
                exc,
            )
            return None

        if not response.is_success:
            logger.debug(
                "token_count_upstream_status status=%d body=%s",
                response.status_code,
                _truncate(response.text, DEBUG_BODY_LOG_LIMIT),
            )
            return None
        try:
            parsed = response.json()
        except ValueError:
            logger.debug("token_count_upstream_invalid_json status=%d", response.status_code)
            return None
        tokens = parsed.get("input_tokens") if isinstance(parsed, dict) else None
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0:
            logger.debug("token_count_upstream_missing_tokens status=%d", response.status_code)
            return None
        return tokens
