"""Application configuration for the gem mirror proxy."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RUBYGEMS_URL = "https://rubygems.org"
ONE_YEAR_SECONDS = 31_536_000


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def sqlite_url(path: Path | str) -> str:
    resolved = Path(path).expanduser().resolve()
    return f"sqlite+pysqlite:///{resolved.as_posix()}"


class GemMirrorSettings(BaseSettings):
    """Runtime settings for the gem mirror proxy service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    storage_path: Path = env_field(Path("./gem_cache"), "GEMMIRROR_STORAGE_PATH")
    rubygems_url: str = env_field(DEFAULT_RUBYGEMS_URL, "GEMMIRROR_RUBYGEMS_URL")
    stats_database_url: Optional[str] = env_field(None, "GEMMIRROR_STATS_DB")
    upstream_timeout_seconds: float = env_field(20.0, "GEMMIRROR_UPSTREAM_TIMEOUT")
    upstream_max_connections: int = env_field(20, "GEMMIRROR_UPSTREAM_MAX_CONNECTIONS")
    user_agent: str = env_field("gemmirror", "GEMMIRROR_USER_AGENT")
    root_cache_max_age_seconds: int = env_field(ONE_YEAR_SECONDS, "GEMMIRROR_ROOT_CACHE_MAX_AGE")
    metrics_token: Optional[SecretStr] = env_field(None, "GEMMIRROR_METRICS_TOKEN")
    bind_host: str = env_field("0.0.0.0", "GEMMIRROR_HOST")
    bind_port: int = env_field(9292, "GEMMIRROR_PORT")
    log_level: str = env_field("INFO", "GEMMIRROR_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "GEMMIRROR_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "GEMMIRROR_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "GEMMIRROR_OTEL_SAMPLER_RATIO")

    @field_validator("stats_database_url", mode="before")
    @classmethod
    def _normalize_stats_url(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            return sqlite_url(value)
        return value

    @field_validator("rubygems_url", mode="before")
    @classmethod
    def _strip_rubygems_url(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @property
    def gem_cache_path(self) -> Path:
        return self.storage_path / "gem_cache"

    @property
    def resolved_stats_database_url(self) -> str:
        if self.stats_database_url:
            return self.stats_database_url
        return sqlite_url(self.storage_path / "stats.db")
