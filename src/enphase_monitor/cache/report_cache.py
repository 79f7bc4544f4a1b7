"""Single-slot, disk-backed cache of the last aggregated report."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from enphase_monitor.cache.response_cache import Clock, utc_now, write_json_atomic
from enphase_monitor.config.schema import CacheConfig
from enphase_monitor.metrics.models import AggregatedMetrics, as_utc

logger = logging.getLogger(__name__)


class ReportCacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    metrics: AggregatedMetrics
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds()


class ReportCache:
    """Holds one ReportCacheEntry, mirrored in memory and on disk.

    Fresh while younger than the TTL; a stale entry is still returned by
    ``load()`` so callers can fall back to it when a fetch fails.
    """

    def __init__(
        self,
        path: Path,
        ttl_seconds: float = 60.0,
        max_file_bytes: int = 5 * 1024 * 1024,
        clock: Clock | None = None,
    ) -> None:
        self._path = Path(path)
        self._ttl = ttl_seconds
        self._max_file_bytes = max_file_bytes
        self._clock = clock or utc_now
        self._entry: ReportCacheEntry | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: CacheConfig, clock: Clock | None = None) -> ReportCache:
        return cls(
            path=config.report_path,
            ttl_seconds=config.report_ttl_seconds,
            max_file_bytes=config.max_file_bytes,
            clock=clock,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def is_fresh(self, entry: ReportCacheEntry) -> bool:
        return entry.age_seconds(self._clock()) < self._ttl

    async def load(self) -> ReportCacheEntry | None:
        """Return the cached report regardless of age, reading disk on first use."""
        async with self._lock:
            if not self._loaded:
                self._entry = await self._read()
                self._loaded = True
            return self._entry

    async def load_fresh(self) -> ReportCacheEntry | None:
        entry = await self.load()
        if entry is not None and self.is_fresh(entry):
            return entry
        return None

    async def save(self, metrics: AggregatedMetrics) -> ReportCacheEntry:
        entry = ReportCacheEntry(metrics=metrics, timestamp=self._clock())
        async with self._lock:
            self._entry = entry
            self._loaded = True
            try:
                await asyncio.to_thread(
                    write_json_atomic, self._path, entry.model_dump(mode="json"),
                )
                logger.debug("Report saved to %s", self._path)
            except OSError as e:
                logger.warning("Failed to save report to %s: %s", self._path, e)
        return entry

    async def clear(self) -> None:
        async with self._lock:
            self._entry = None
            self._loaded = True
            self._path.unlink(missing_ok=True)
        logger.info("Report cache cleared")

    async def _read(self) -> ReportCacheEntry | None:
        path = self._path
        if not path.exists():
            logger.debug("No cached report file at %s", path)
            return None
        try:
            if path.stat().st_size > self._max_file_bytes:
                logger.warning("Cached report %s is oversized; deleting", path)
                path.unlink(missing_ok=True)
                return None
            raw = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            logger.warning("Failed to read cached report %s: %s", path, e)
            return None
        try:
            entry = ReportCacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Cached report is corrupt (%d errors); deleting", e.error_count(),
            )
            path.unlink(missing_ok=True)
            return None
        try:
            age = entry.age_seconds(self._clock())
        except TypeError as e:
            logger.warning("Cached report timestamp is unusable (%s); deleting", e)
            path.unlink(missing_ok=True)
            return None
        logger.info("Loaded cached report (age %.1fs)", age)
        return entry
