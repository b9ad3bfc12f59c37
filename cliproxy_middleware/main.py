from __future__ import annotations

import argparse
import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from cliproxy_middleware.errors import InvalidRequestError, error_response
from cliproxy_middleware.health import ServerState, UpstreamHealthProber
from cliproxy_middleware.interceptors import (
    TokenCounter,
    rewrite_chat_completions_body,
    rewrite_messages_body,
)
from cliproxy_middleware.model_mapping import load_model_translator
from cliproxy_middleware.proxy import UpstreamProxy, build_pooled_transport
from cliproxy_middleware.settings import apply_cli_overrides, get_settings
from cliproxy_middleware.usage import UsageStats

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

app = FastAPI(
    title="CLIProxy Middleware",
    description=(
        "Anthropic/OpenAI-compatible proxy that adapts tool schemas and model names "
        "for a Gemini-backed gateway."
    ),
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def request_accounting_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    state: ServerState | None = getattr(app.state, "server_state", None)
    if state is not None:
        state.record_request()
    if getattr(app.state, "log_requests", False):
        client = request.client.host if request.client else "-"
        logger.info(
            "request method=%s path=%s client=%s",
            request.method,
            request.url.path,
            client,
        )
    return await call_next(request)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(_: Request, exc: InvalidRequestError) -> JSONResponse:
    return error_response(exc.status_code, exc.message)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    if settings.debug:
        logger.setLevel(logging.DEBUG)

    translator = load_model_translator(settings.model_map_path)
    proxy = UpstreamProxy(
        settings.upstream_base_url,
        transport=build_pooled_transport(
            max_connections=settings.max_connections,
            max_keepalive_connections=settings.max_keepalive_connections,
            keepalive_expiry_seconds=settings.keepalive_expiry_seconds,
        ),
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
    )
    prober = UpstreamHealthProber(
        proxy=proxy,
        interval_seconds=settings.health_probe_interval_seconds,
        timeout_seconds=settings.health_probe_timeout_seconds,
        api_key=settings.api_key,
    )
    app.state.settings = settings
    app.state.log_requests = settings.log_requests
    app.state.model_translator = translator
    app.state.usage_stats = UsageStats()
    app.state.upstream_proxy = proxy
    app.state.token_counter = TokenCounter(
        proxy=proxy,
        translator=translator,
        api_key=settings.api_key,
        chars_per_token=settings.token_multiplier,
        timeout_seconds=settings.token_count_timeout_seconds,
    )
    app.state.server_state = ServerState()
    app.state.upstream_prober = prober
    await prober.start()
    logger.info(
        (
            "startup complete upstream=%s api_key=%s debug=%s log_requests=%s "
            "token_multiplier=%.2f model_map_path=%s upstream_healthy=%s"
        ),
        settings.upstream_base_url,
        settings.masked_api_key,
        settings.debug,
        settings.log_requests,
        settings.token_multiplier,
        settings.model_map_path,
        prober.healthy,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    prober: UpstreamHealthProber | None = getattr(app.state, "upstream_prober", None)
    if prober is not None:
        await prober.stop()
    proxy: UpstreamProxy | None = getattr(app.state, "upstream_proxy", None)
    if proxy is not None:
        await proxy.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    state: ServerState = app.state.server_state
    prober: UpstreamHealthProber = app.state.upstream_prober
    return {
        "status": "ok" if state.healthy else "degraded",
        "uptime": state.uptime,
        "requests": state.total_requests,
        "upstream_healthy": prober.healthy,
    }


@app.get("/health/live")
async def health_live() -> dict[str, str]:
    return {"status": "alive"}


@app.get("/health/ready")
async def health_ready() -> JSONResponse:
    prober: UpstreamHealthProber = app.state.upstream_prober
    if prober.healthy:
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready"})
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "reason": "upstream_unavailable"},
    )


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"'
        for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def _append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


def _render_prometheus_metrics(
    *,
    state: ServerState,
    upstream_healthy: bool,
    usage: UsageStats,
) -> str:
    lines: list[str] = []
    declared: set[str] = set()
    _append_prometheus_metric(
        lines,
        declared,
        name="cliproxy_uptime_seconds",
        metric_type="gauge",
        help_text="Seconds since the middleware process started.",
        value=state.uptime_seconds,
    )
    _append_prometheus_metric(
        lines,
        declared,
        name="cliproxy_requests_total",
        metric_type="counter",
        help_text="Inbound HTTP requests handled by the middleware.",
        value=state.total_requests,
    )
    _append_prometheus_metric(
        lines,
        declared,
        name="cliproxy_upstream_up",
        metric_type="gauge",
        help_text="Whether the last upstream health probe succeeded (1) or not (0).",
        value=1 if upstream_healthy else 0,
    )
    token_kinds = {
        "input": usage.input_tokens,
        "output": usage.output_tokens,
        "cache_creation_input": usage.cache_creation_input_tokens,
        "cache_read_input": usage.cache_read_input_tokens,
    }
    for kind, count in token_kinds.items():
        _append_prometheus_metric(
            lines,
            declared,
            name="cliproxy_usage_tokens_total",
            metric_type="counter",
            help_text="Tokens reported by upstream usage records since the last reset.",
            value=count,
            labels={"kind": kind},
        )
    _append_prometheus_metric(
        lines,
        declared,
        name="cliproxy_usage_requests_total",
        metric_type="counter",
        help_text="Usage records observed since the last reset.",
        value=usage.total_requests,
    )
    return "\n".join(lines) + "\n"


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    prober: UpstreamHealthProber = app.state.upstream_prober
    payload = _render_prometheus_metrics(
        state=app.state.server_state,
        upstream_healthy=prober.healthy,
        usage=app.state.usage_stats,
    )
    return PlainTextResponse(
        content=payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def _reset_usage() -> dict[str, Any]:
    usage: UsageStats = app.state.usage_stats
    usage.reset()
    logger.info("usage_reset")
    return {"status": "reset", "usage": usage.snapshot()}


@app.get("/usage")
async def usage(reset: bool = False) -> dict[str, Any]:
    if reset:
        return _reset_usage()
    usage_stats: UsageStats = app.state.usage_stats
    return usage_stats.snapshot()


@app.delete("/usage")
async def reset_usage() -> dict[str, Any]:
    return _reset_usage()


async def _forward(request: Request, body: bytes) -> Response:
    proxy: UpstreamProxy = app.state.upstream_proxy
    return await proxy.forward(
        method=request.method,
        path=request.url.path,
        query=request.url.query,
        incoming_headers=request.headers,
        body=body,
        client_host=request.client.host if request.client else None,
        usage_stats=app.state.usage_stats,
    )


@app.api_route("/v1/messages/count_tokens", methods=ALL_METHODS)
async def count_tokens(request: Request) -> Response:
    if request.method != "POST":
        return error_response(status.HTTP_405_METHOD_NOT_ALLOWED, "Method not allowed")
    counter: TokenCounter = app.state.token_counter
    tokens = await counter.count(await request.body(), request.headers)
    return JSONResponse(status_code=status.HTTP_200_OK, content={"input_tokens": tokens})


@app.post("/v1/messages")
async def messages(request: Request) -> Response:
    body = rewrite_messages_body(await request.body(), app.state.model_translator)
    return await _forward(request, body)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    body = rewrite_chat_completions_body(await request.body())
    return await _forward(request, body)


@app.api_route("/{path:path}", methods=ALL_METHODS)
async def passthrough(path: str, request: Request) -> Response:
    return await _forward(request, await request.body())


class GracefulServer(uvicorn.Server):
    """Marks the service degraded and waits out a grace period before closing listeners."""

    def __init__(self, config: uvicorn.Config, *, grace_seconds: float) -> None:
        super().__init__(config)
        self._grace_seconds = max(0.0, grace_seconds)

    async def shutdown(self, sockets: list[socket.socket] | None = None) -> None:
        state: ServerState | None = getattr(app.state, "server_state", None)
        if state is not None:
            state.mark_draining()
        logger.info("shutdown_draining grace_seconds=%.1f", self._grace_seconds)
        await asyncio.sleep(self._grace_seconds)
        await super().shutdown(sockets=sockets)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cliproxy-middleware",
        description="Schema-normalizing proxy in front of a CLIProxyAPI gateway.",
    )
    parser.add_argument("--host", help="Interface to bind (default 127.0.0.1).")
    parser.add_argument("--port", type=int, help="Port to listen on (default 8318).")
    parser.add_argument(
        "--upstream",
        dest="upstream_url",
        help="CLIProxyAPI upstream URL (default http://127.0.0.1:8317).",
    )
    parser.add_argument(
        "--api-key",
        dest="api_key",
        help="Fallback API key for upstream token counting and health probes.",
    )
    parser.add_argument(
        "--debug", action="store_true", default=None, help="Enable debug logging."
    )
    parser.add_argument(
        "--log-requests",
        dest="log_requests",
        action="store_true",
        default=None,
        help="Log every inbound request.",
    )
    parser.add_argument(
        "--token-multiplier",
        dest="token_multiplier",
        type=float,
        help="Characters per token for local token estimation (default 4.0).",
    )
    parser.add_argument(
        "--model-map",
        dest="model_map_path",
        help="YAML file with extra exact/prefix model mappings.",
    )
    return parser


def run(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    apply_cli_overrides(vars(args))
    settings = get_settings()
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        timeout_graceful_shutdown=settings.shutdown_drain_timeout_seconds,
        timeout_keep_alive=120,
    )
    GracefulServer(config, grace_seconds=settings.shutdown_grace_seconds).run()


if __name__ == "__main__":
    run()
