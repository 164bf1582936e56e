"""Application configuration for the catcache service."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_UPSTREAM_URL = "https://http.cat"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class CacheProxySettings(BaseSettings):
    """Configuration for the read-through cache proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    host: str = env_field("127.0.0.1", "CATCACHE_HOST")
    port: int = env_field(8080, "CATCACHE_PORT")
    storage_path: Path = env_field(Path("./cache"), "CATCACHE_CACHE_DIR")
    upstream_url: str = env_field(DEFAULT_UPSTREAM_URL, "CATCACHE_UPSTREAM_URL")
    upstream_timeout_seconds: float = env_field(30.0, "CATCACHE_UPSTREAM_TIMEOUT")
    coalesce_fetches: bool = env_field(False, "CATCACHE_COALESCE_FETCHES")
    ops_endpoints: bool = env_field(False, "CATCACHE_OPS_ENDPOINTS")
    metrics_token: Optional[SecretStr] = env_field(None, "CATCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "CATCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "CATCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "CATCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "CATCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("storage_path", mode="after")
    @classmethod
    def _resolve_storage_path(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @field_validator("upstream_url", mode="after")
    @classmethod
    def _strip_upstream_slash(cls, value: str) -> str:
        if "://" not in value:
            raise ValueError("upstream URL must include a scheme")
        return value.rstrip("/")

    @field_validator("port", mode="after")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return value

    @field_validator("upstream_timeout_seconds", mode="after")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("upstream timeout must be positive")
        return value
