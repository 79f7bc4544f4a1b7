"""Pydantic configuration models for all system settings."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_cache_dir() -> str:
    base = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return str(Path(base) / "enphase-monitor")


class ApiConfig(BaseModel):
    api_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    authorization_url: str = "https://api.enphaseenergy.com/oauth/token"
    base_url: str = "https://api.enphaseenergy.com/api/v4"
    redirect_uri: str = "enphase-monitor://callback"
    timeout_seconds: float = 30.0
    granularity: str = "15mins"


class SystemConfig(BaseModel):
    id: str
    name: str


class CacheConfig(BaseModel):
    directory: str = Field(default_factory=_default_cache_dir)
    response_file: str = "enphase_api_cache.json"
    report_file: str = "enphase_report_cache.json"
    response_ttl_seconds: float = Field(60.0, gt=0)
    max_entries: int = Field(20, ge=1)
    max_file_bytes: int = 5 * 1024 * 1024  # oversize files are deleted on load
    persist_debounce_seconds: float = Field(2.0, ge=0)
    report_ttl_seconds: float = Field(60.0, gt=0)

    @property
    def response_path(self) -> Path:
        return Path(self.directory) / self.response_file

    @property
    def report_path(self) -> Path:
        return Path(self.directory) / self.report_file


class RetryConfig(BaseModel):
    max_rate_limit_retries: int = Field(2, ge=0)
    refresh_grace_seconds: float = Field(0.1, ge=0)


class ResilienceConfig(BaseModel):
    max_consecutive_failures: int = Field(3, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"
    file: str = ""


class AppConfig(BaseModel):
    """Root configuration model containing all system settings."""

    api: ApiConfig = ApiConfig()
    systems: list[SystemConfig] = Field(default_factory=list)
    refresh_interval_seconds: int = Field(3600, ge=1)
    timezone: str = "US/Pacific"
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = RetryConfig()
    resilience: ResilienceConfig = ResilienceConfig()
    logging: LoggingConfig = LoggingConfig()
