from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from cliproxy_middleware.proxy import UpstreamProxy
from cliproxy_middleware.usage import AtomicCounter, format_duration

UPSTREAM_PROBE_PATH = "/v1/models"

logger = logging.getLogger("uvicorn.error")


class ServerState:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._started = clock()
        self._requests = AtomicCounter()
        self.healthy = True

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, self._clock() - self._started)

    @property
    def uptime(self) -> str:
        return format_duration(self.uptime_seconds)

    @property
    def total_requests(self) -> int:
        return self._requests.load()

    def record_request(self) -> None:
        self._requests.add(1)

    def mark_draining(self) -> None:
        self.healthy = False


class UpstreamHealthProber:
    """Background task that polls the upstream model list and owns the readiness flag."""

    def __init__(
        self,
        *,
        proxy: UpstreamProxy,
        interval_seconds: float = 10.0,
        timeout_seconds: float = 5.0,
        api_key: str | None = None,
        path: str = UPSTREAM_PROBE_PATH,
    ) -> None:
        self._proxy = proxy
        self._interval_seconds = max(0.1, float(interval_seconds))
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._api_key = api_key
        self._path = path
        self._healthy = False
        self._probed = False
        self._task: asyncio.Task[None] | None = None

    @property
    def healthy(self) -> bool:
        return self._healthy

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.probe_once()
        self._task = asyncio.create_task(self._run(), name="upstream-health-prober")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def probe_once(self) -> bool:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        reason: str | None = None
        try:
            response = await self._proxy.request(
                "GET", self._path, headers=headers, timeout=self._timeout_seconds
            )
        except httpx.RequestError as exc:
            healthy = False
            reason = f"{exc.__class__.__name__}: {exc}"
        else:
            # Any answer below 500 means the gateway is up, even if it rejects auth.
            healthy = response.status_code < 500
            if not healthy:
                reason = f"status={response.status_code}"
        self._set_healthy(healthy, reason)
        return healthy

    def _set_healthy(self, healthy: bool, reason: str | None) -> None:
        changed = not self._probed or healthy != self._healthy
        self._healthy = healthy
        self._probed = True
        if not changed:
            return
        if healthy:
            logger.info("upstream_healthy url=%s", self._proxy.url_for(self._path))
        else:
            logger.warning(
                "upstream_unhealthy url=%s reason=%s",
                self._proxy.url_for(self._path),
                reason,
            )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.probe_once()
            except Exception as exc:
                logger.warning("upstream_probe_failed error=%s", exc)
