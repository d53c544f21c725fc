"""Application configuration for the caching proxy."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


DEFAULT_CACHE_CONTROL = "public, max-age=604800, immutable"  # 1 week
FAVICON_CACHE_CONTROL = "public, max-age=31536000"  # 1 year


class ProxySettings(BaseSettings):
    """Runtime settings for the caching proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    read_keys: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="MIRRORCACHE_READ_KEYS")
    write_keys: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="MIRRORCACHE_WRITE_KEYS")
    buffered_hosts: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="MIRRORCACHE_BUFFERED_HOSTS")

    storage_path: Path = env_field(Path("./cache"), "MIRRORCACHE_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "MIRRORCACHE_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "MIRRORCACHE_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "MIRRORCACHE_S3_REGION")
    s3_max_retries: int = env_field(3, "MIRRORCACHE_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "MIRRORCACHE_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "MIRRORCACHE_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "MIRRORCACHE_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "MIRRORCACHE_S3_CIRCUIT_RESET")

    redis_url: Optional[str] = env_field(None, "MIRRORCACHE_REDIS_URL")
    edge_cache_ttl_seconds: int = env_field(3600, "MIRRORCACHE_EDGE_TTL")
    edge_cache_max_entries: int = env_field(1024, "MIRRORCACHE_EDGE_MAX_ENTRIES")
    edge_cache_max_entry_bytes: int = env_field(8 * 1024 * 1024, "MIRRORCACHE_EDGE_MAX_ENTRY_BYTES")  # 8MB

    cache_control: str = env_field(DEFAULT_CACHE_CONTROL, "MIRRORCACHE_CACHE_CONTROL")
    favicon_key: str = env_field("favicon.ico", "MIRRORCACHE_FAVICON_KEY")
    favicon_cache_control: str = env_field(FAVICON_CACHE_CONTROL, "MIRRORCACHE_FAVICON_CACHE_CONTROL")

    origin_timeout_seconds: float = env_field(30.0, "MIRRORCACHE_ORIGIN_TIMEOUT")
    origin_user_agent: str = env_field("mirrorcache/0.3", "MIRRORCACHE_ORIGIN_USER_AGENT")
    tee_buffer_chunks: int = env_field(16, "MIRRORCACHE_TEE_BUFFER_CHUNKS")
    background_drain_timeout_seconds: float = env_field(30.0, "MIRRORCACHE_DRAIN_TIMEOUT")

    metrics_token: Optional[SecretStr] = env_field(None, "MIRRORCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "MIRRORCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "MIRRORCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "MIRRORCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "MIRRORCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("read_keys", mode="before")
    @classmethod
    def _split_read_keys(cls, value):
        return _split_csv(value)

    @field_validator("write_keys", mode="before")
    @classmethod
    def _split_write_keys(cls, value):
        return _split_csv(value)

    @field_validator("buffered_hosts", mode="before")
    @classmethod
    def _split_buffered_hosts(cls, value):
        hosts = _split_csv(value)
        if isinstance(hosts, list):
            return [host.lower() for host in hosts]
        return hosts
