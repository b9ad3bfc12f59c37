from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.datastructures import Headers

from cliproxy_middleware.errors import UPSTREAM_ERROR, error_response
from cliproxy_middleware.usage import UsageObserver, UsageStats, is_event_stream

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
# Upstream bodies must arrive uncompressed; they are relayed and scanned as raw bytes.
REQUEST_HEADERS_TO_DROP = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    "accept-encoding",
}
STREAMING_CONTENT_TYPES = ("text/event-stream", "application/x-ndjson")
DEBUG_BODY_LOG_LIMIT = 500
DEBUG_BODY_LOG_MAX_BYTES = 10_000

logger = logging.getLogger("uvicorn.error")


def build_pooled_transport(
    *,
    max_connections: int = 100,
    max_keepalive_connections: int = 20,
    keepalive_expiry_seconds: float = 90.0,
) -> httpx.AsyncBaseTransport:
    return httpx.AsyncHTTPTransport(
        limits=httpx.Limits(
            max_connections=max(1, max_connections),
            max_keepalive_connections=max(0, max_keepalive_connections),
            keepalive_expiry=max(0.0, keepalive_expiry_seconds),
        ),
        http2=_can_enable_http2(),
    )


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    return {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def upstream_error_response(exc: httpx.RequestError) -> JSONResponse:
    if isinstance(exc, httpx.TimeoutException):
        return error_response(
            status.HTTP_504_GATEWAY_TIMEOUT, "Upstream server timed out", UPSTREAM_ERROR
        )
    if isinstance(exc, httpx.ConnectError):
        return error_response(
            status.HTTP_502_BAD_GATEWAY,
            "Upstream server is not available",
            UPSTREAM_ERROR,
        )
    return error_response(
        status.HTTP_502_BAD_GATEWAY,
        "Failed to connect to upstream server",
        UPSTREAM_ERROR,
    )


def is_streaming_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    lowered = content_type.lower()
    return any(media_type in lowered for media_type in STREAMING_CONTENT_TYPES)


def build_forward_headers(
    incoming_headers: Headers, client_host: str | None = None
) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    forwarded_for: str | None = None
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in REQUEST_HEADERS_TO_DROP:
            continue
        if lower == "x-forwarded-for":
            forwarded_for = value
            continue
        headers.append((name, value))
    if client_host:
        forwarded_for = f"{forwarded_for}, {client_host}" if forwarded_for else client_host
    if forwarded_for:
        headers.append(("X-Forwarded-For", forwarded_for))
    return headers


def filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_HEADERS:
            filtered[name] = value
    if is_streaming_content_type(headers.get("content-type")):
        # The final length of a stream is unknown up front.
        for name in list(filtered):
            if name.lower() == "content-length":
                filtered.pop(name)
        filtered["X-Accel-Buffering"] = "no"
        filtered["Cache-Control"] = "no-cache"
    return filtered


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


class UpstreamProxy:
    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 600.0,
        write_timeout_seconds: float = 600.0,
        pool_timeout_seconds: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            transport=transport or build_pooled_transport(),
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, connect_timeout_seconds),
                read=max(0.1, read_timeout_seconds),
                write=max(0.1, write_timeout_seconds),
                pool=max(0.1, pool_timeout_seconds),
            ),
            follow_redirects=False,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def url_for(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}{path}"
        return f"{url}?{query}" if query else url

    async def request(
        self,
        method: str,
        path: str,
        *,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await self.client.request(
            method,
            self.url_for(path),
            content=content,
            headers=headers,
            **kwargs,
        )

    async def forward(
        self,
        *,
        method: str,
        path: str,
        query: str,
        incoming_headers: Headers,
        body: bytes,
        client_host: str | None = None,
        usage_stats: UsageStats | None = None,
    ) -> Response:
        url = self.url_for(path, query)
        request = self.client.build_request(
            method=method,
            url=url,
            headers=build_forward_headers(incoming_headers, client_host),
            content=body,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("proxy_upstream_request method=%s url=%s", method, url)
            if body and len(body) < DEBUG_BODY_LOG_MAX_BYTES:
                logger.debug(
                    "proxy_upstream_request_body body=%s",
                    _truncate(body.decode("utf-8", errors="replace"), DEBUG_BODY_LOG_LIMIT),
                )

        started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error path=%s url=%s error_type=%s is_timeout=%s error=%s",
                path,
                url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            return upstream_error_response(exc)

        logger.debug(
            "proxy_upstream_response status=%d latency_ms=%.2f",
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        content_type = upstream.headers.get("content-type")
        observer: UsageObserver | None = None
        if usage_stats is not None:
            observer = UsageObserver(usage_stats, streaming=is_event_stream(content_type))

        async def stream_body() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_raw():
                    if observer is not None:
                        observer.feed(chunk)
                    yield chunk
                if observer is not None:
                    observer.close()
            except httpx.RequestError as exc:
                logger.warning(
                    "proxy_upstream_stream_error path=%s url=%s error=%s",
                    path,
                    url,
                    exc,
                )
            finally:
                # Also runs when the client disconnects and the generator is cancelled.
                await upstream.aclose()

        return StreamingResponse(
            content=stream_body(),
            status_code=upstream.status_code,
            headers=filter_response_headers(upstream.headers),
        )
