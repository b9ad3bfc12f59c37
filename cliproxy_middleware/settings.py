from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UPSTREAM_URL = "http://127.0.0.1:8317"


class Settings(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 8318
    upstream_url: str = DEFAULT_UPSTREAM_URL
    api_key: str | None = None
    debug: bool = False
    log_requests: bool = False
    token_multiplier: float = Field(default=4.0, gt=0)
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 600.0
    upstream_write_timeout_seconds: float = 600.0
    upstream_pool_timeout_seconds: float = 10.0
    max_connections: int = 100
    max_keepalive_connections: int = 20
    keepalive_expiry_seconds: float = 90.0
    token_count_timeout_seconds: float = 30.0
    health_probe_interval_seconds: float = 10.0
    health_probe_timeout_seconds: float = 5.0
    shutdown_grace_seconds: float = 5.0
    shutdown_drain_timeout_seconds: int = 30
    model_map_path: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="CLIPROXY_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def upstream_base_url(self) -> str:
        return self.upstream_url.rstrip("/")

    @property
    def masked_api_key(self) -> str | None:
        return mask_secret(self.api_key)


def mask_secret(value: str | None) -> str | None:
    if not value:
        return None
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}…{value[-4:]}"


_cli_overrides: dict[str, Any] = {}


def apply_cli_overrides(overrides: dict[str, Any]) -> None:
    _cli_overrides.clear()
    _cli_overrides.update(
        {key: value for key, value in overrides.items() if value is not None}
    )
    get_settings.cache_clear()


@lru_cache
def get_settings() -> Settings:
    # Init kwargs outrank the environment, so explicit flags always win.
    return Settings(**_cli_overrides)
