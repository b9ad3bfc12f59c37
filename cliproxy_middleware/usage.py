from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

DEFAULT_MAX_OBSERVED_BYTES = 8 * 1024 * 1024

logger = logging.getLogger("uvicorn.error")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_duration(seconds: float) -> str:
    remaining = max(0, int(round(seconds)))
    hours, remaining = divmod(remaining, 3600)
    minutes, secs = divmod(remaining, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def is_event_stream(content_type: str | None) -> bool:
    return bool(content_type) and "text/event-stream" in content_type.lower()


class AtomicCounter:
    __slots__ = ("_lock", "_value")

    def __init__(self, value: int = 0) -> None:
        self._lock = Lock()
        self._value = value

    def add(self, amount: int) -> int:
        with self._lock:
            self._value += amount
            return self._value

    def load(self) -> int:
        with self._lock:
            return self._value

    def store(self, value: int) -> None:
        with self._lock:
            self._value = value


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


@dataclass(frozen=True, slots=True)
class UsageRecord:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @classmethod
    def from_payload(cls, value: Any) -> UsageRecord | None:
        if not isinstance(value, dict):
            return None
        return cls(
            input_tokens=_coerce_count(value.get("input_tokens")),
            output_tokens=_coerce_count(value.get("output_tokens")),
            cache_creation_input_tokens=_coerce_count(
                value.get("cache_creation_input_tokens")
            ),
            cache_read_input_tokens=_coerce_count(value.get("cache_read_input_tokens")),
        )


class UsageStats:
    """Process-wide token usage totals.

    Counters are updated individually; only the timestamps share a lock.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._input_tokens = AtomicCounter()
        self._output_tokens = AtomicCounter()
        self._cache_creation = AtomicCounter()
        self._cache_read = AtomicCounter()
        self._total_requests = AtomicCounter()
        self._time_lock = Lock()
        self._session_start = clock()
        self._last_request: datetime | None = None

    @property
    def input_tokens(self) -> int:
        return self._input_tokens.load()

    @property
    def output_tokens(self) -> int:
        return self._output_tokens.load()

    @property
    def cache_creation_input_tokens(self) -> int:
        return self._cache_creation.load()

    @property
    def cache_read_input_tokens(self) -> int:
        return self._cache_read.load()

    @property
    def total_requests(self) -> int:
        return self._total_requests.load()

    @property
    def session_start(self) -> datetime:
        with self._time_lock:
            return self._session_start

    def add(self, record: UsageRecord) -> None:
        with self._time_lock:
            self._last_request = self._clock()
        self._total_requests.add(1)
        if record.input_tokens > 0:
            self._input_tokens.add(record.input_tokens)
        if record.output_tokens > 0:
            self._output_tokens.add(record.output_tokens)
        if record.cache_creation_input_tokens > 0:
            self._cache_creation.add(record.cache_creation_input_tokens)
        if record.cache_read_input_tokens > 0:
            self._cache_read.add(record.cache_read_input_tokens)
        logger.debug(
            "usage_recorded input=%d output=%d total_input=%d total_output=%d",
            record.input_tokens,
            record.output_tokens,
            self.input_tokens,
            self.output_tokens,
        )

    def snapshot(self) -> dict[str, Any]:
        with self._time_lock:
            session_start = self._session_start
            last_request = self._last_request
        stats: dict[str, Any] = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "total_requests": self.total_requests,
            "session_start": session_start.isoformat(),
            "session_duration": format_duration(
                (self._clock() - session_start).total_seconds()
            ),
        }
        if last_request is not None:
            stats["last_request"] = last_request.isoformat()
        return stats

    def reset(self) -> None:
        with self._time_lock:
            self._input_tokens.store(0)
            self._output_tokens.store(0)
            self._cache_creation.store(0)
            self._cache_read.store(0)
            self._total_requests.store(0)
            self._session_start = self._clock()
            self._last_request = None


class UsageObserver:
    """Side-observer for a response body; extracts usage without holding chunks back.

    Event streams are scanned line by line, keeping only the unterminated tail of
    the last chunk. Plain bodies are copied up to ``max_bytes`` and parsed when
    the body ends.
    """

    def __init__(
        self,
        stats: UsageStats,
        *,
        streaming: bool,
        max_bytes: int = DEFAULT_MAX_OBSERVED_BYTES,
    ) -> None:
        self._stats = stats
        self._streaming = streaming
        self._max_bytes = max(1, int(max_bytes))
        self._buffer = bytearray()
        self._overflowed = False

    @property
    def streaming(self) -> bool:
        return self._streaming

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        if self._streaming:
            self._feed_stream(chunk)
            return
        if self._overflowed:
            return
        if len(self._buffer) + len(chunk) > self._max_bytes:
            self._overflowed = True
            self._buffer.clear()
            return
        self._buffer.extend(chunk)

    def close(self) -> None:
        if self._streaming:
            if self._buffer and not self._overflowed:
                self._handle_line(bytes(self._buffer))
        elif self._buffer and not self._overflowed:
            self._handle_body(bytes(self._buffer))
        self._buffer.clear()

    def _feed_stream(self, chunk: bytes) -> None:
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            if newline < 0:
                break
            if self._overflowed:
                # Tail of a line that was too long to keep.
                self._overflowed = False
                self._buffer.clear()
            else:
                self._buffer.extend(chunk[start:newline])
                self._handle_line(bytes(self._buffer))
                self._buffer.clear()
            start = newline + 1

        if self._overflowed:
            return
        self._buffer.extend(chunk[start:])
        if len(self._buffer) > self._max_bytes:
            self._overflowed = True
            self._buffer.clear()

    def _handle_line(self, raw_line: bytes) -> None:
        line = raw_line.rstrip(b"\r")
        if not line.startswith(b"data:"):
            return
        data = line[5:].strip()
        if not data or data == b"[DONE]":
            return
        try:
            event = json.loads(data)
        except ValueError:
            return
        if isinstance(event, dict):
            self._record(event.get("usage"))

    def _handle_body(self, body: bytes) -> None:
        try:
            payload = json.loads(body)
        except ValueError:
            return
        if isinstance(payload, dict):
            self._record(payload.get("usage"))

    def _record(self, value: Any) -> None:
        record = UsageRecord.from_payload(value)
        if record is not None:
            self._stats.add(record)
