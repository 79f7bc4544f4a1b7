"""Per-endpoint HTTP response cache.

Entries are keyed by full request URL and hold the raw response bytes, status
and headers. An entry is served while younger than the TTL; the store is
bounded to ``max_entries`` with oldest-first eviction and persisted to a JSON
file with debounced, atomic writes.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from enphase_monitor.cache.rwlock import ReadWriteLock
from enphase_monitor.config.schema import CacheConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def redact_url(url: str) -> str:
    """Strip the API key and query string from a URL for logging."""
    path, _, query = url.partition("?")
    marker = path.find("/systems/")
    if marker >= 0:
        return path[marker:]
    if not query:
        return path
    parts = [
        "key=***" if p.startswith("key=") else p
        for p in query.split("&")
    ]
    return f"{path}?{'&'.join(parts)}"


@dataclass(frozen=True)
class CacheEntry:
    """One cached response. Replaced, never mutated."""

    key: str
    payload: bytes
    timestamp: datetime
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds()

    def is_valid(self, now: datetime, ttl_seconds: float) -> bool:
        return self.age_seconds(now) < ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": base64.b64encode(self.payload).decode("ascii"),
            "timestamp": self.timestamp.isoformat(),
            "status_code": self.status_code,
            "headers": dict(self.headers),
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> CacheEntry:
        headers = data.get("headers") or {}
        if not isinstance(headers, dict):
            raise ValueError(f"headers for {redact_url(key)} is not a mapping")
        return cls(
            key=key,
            payload=base64.b64decode(data["data"], validate=True),
            timestamp=parse_timestamp(data["timestamp"]),
            status_code=int(data["status_code"]),
            headers={str(k): str(v) for k, v in headers.items()},
        )


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    expired: int = 0
    evictions: int = 0
    disk_writes: int = 0


class ResponseCache:
    """TTL- and size-bounded response store with debounced disk persistence.

    One instance per process, owned by the application and injected into the
    telemetry client. All map access goes through a reader/writer lock.
    """

    def __init__(
        self,
        path: Path,
        ttl_seconds: float = 60.0,
        max_entries: int = 20,
        max_file_bytes: int = 5 * 1024 * 1024,
        debounce_seconds: float = 2.0,
        clock: Clock | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._path = Path(path)
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._max_file_bytes = max_file_bytes
        self._debounce = debounce_seconds
        self._clock = clock or utc_now
        self._entries: dict[str, CacheEntry] = {}
        self._lock = ReadWriteLock()
        self._disk_lock = asyncio.Lock()
        self._persist_task: asyncio.Task | None = None
        self._stats = CacheStats()

    @classmethod
    def from_config(cls, config: CacheConfig, clock: Clock | None = None) -> ResponseCache:
        return cls(
            path=config.response_path,
            ttl_seconds=config.response_ttl_seconds,
            max_entries=config.max_entries,
            max_file_bytes=config.max_file_bytes,
            debounce_seconds=config.persist_debounce_seconds,
            clock=clock,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def persist_pending(self) -> bool:
        return self._persist_task is not None and not self._persist_task.done()

    def __len__(self) -> int:
        return len(self._entries)

    async def keys(self) -> list[str]:
        async with self._lock.read():
            return list(self._entries)

    async def get(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key`` if present and younger than the TTL.

        Expired entries count as a miss but stay in the store until the next
        put purges them.
        """
        async with self._lock.read():
            entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            logger.debug("Cache MISS for %s", redact_url(key))
            return None
        now = self._clock()
        age = entry.age_seconds(now)
        if age >= self._ttl:
            self._stats.expired += 1
            logger.debug("Cache EXPIRED for %s (age %.1fs)", redact_url(key), age)
            return None
        self._stats.hits += 1
        logger.debug("Cache HIT for %s (age %.1fs)", redact_url(key), age)
        return entry

    async def put(
        self,
        key: str,
        payload: bytes,
        status_code: int,
        headers: dict[str, str] | None = None,
    ) -> CacheEntry:
        """Store a response, purging expired and evicting oldest entries first."""
        async with self._lock.write():
            now = self._clock()
            entry = CacheEntry(
                key=key,
                payload=payload,
                timestamp=now,
                status_code=status_code,
                headers=dict(headers or {}),
            )
            self._purge_expired(now)
            self._entries.pop(key, None)
            self._evict_oldest(self._max_entries - 1)
            self._entries[key] = entry
            self._schedule_persist()
            logger.debug(
                "Cache STORED for %s (%d bytes, %d entries)",
                redact_url(key), len(payload), len(self._entries),
            )
        return entry

    async def clear(self, key: str | None = None) -> None:
        """Remove one entry, or every entry when ``key`` is None."""
        async with self._lock.write():
            if key is None:
                self._entries.clear()
                logger.info("Response cache cleared")
            else:
                self._entries.pop(key, None)
                logger.debug("Cache CLEARED for %s", redact_url(key))
            self._schedule_persist()

    async def handle_memory_warning(self) -> None:
        """Drop the in-memory map, leaving the on-disk file for the next cold load."""
        await self.flush()
        async with self._lock.write():
            dropped = len(self._entries)
            self._entries.clear()
        logger.warning("Low memory: dropped %d in-memory cache entries", dropped)

    async def load_from_disk(self) -> int:
        """Populate the store from the backing file. Returns entries loaded.

        Oversized or undecodable files are deleted and the cache starts empty.
        """
        path = self._path
        if not path.exists():
            logger.info("No response cache file at %s (starting empty)", path)
            return 0

        try:
            size = path.stat().st_size
        except OSError as e:
            logger.warning("Cannot stat response cache file %s: %s", path, e)
            return 0
        if size > self._max_file_bytes:
            logger.warning(
                "Response cache file is %d bytes (limit %d); deleting",
                size, self._max_file_bytes,
            )
            path.unlink(missing_ok=True)
            return 0

        try:
            raw = await asyncio.to_thread(path.read_bytes)
            entries = self._decode(raw)
        except OSError as e:
            logger.warning("Failed to read response cache file %s: %s", path, e)
            return 0
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Response cache file is corrupt (%s); deleting", e)
            path.unlink(missing_ok=True)
            return 0

        now = self._clock()
        fresh = {k: e for k, e in entries.items() if e.is_valid(now, self._ttl)}
        async with self._lock.write():
            self._entries = fresh
            self._evict_oldest(self._max_entries)
            loaded = len(self._entries)
        logger.info(
            "Response cache loaded: %d entries (%d expired, %d over limit dropped)",
            loaded, len(entries) - len(fresh), len(fresh) - loaded,
        )
        # Rewrite so the file never holds more than the in-memory map
        if loaded != len(entries):
            await self._persist()
        return loaded

    async def flush(self) -> None:
        """Persist now if a debounced write is pending; wait out any in-flight write."""
        task = self._persist_task
        self._persist_task = None
        if task is not None and not task.done():
            task.cancel()
            await self._persist()
            return
        async with self._disk_lock:
            pass

    # ── internals ────────────────────────────────────────────

    def _purge_expired(self, now: datetime) -> None:
        expired = [k for k, e in self._entries.items() if not e.is_valid(now, self._ttl)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))

    def _evict_oldest(self, limit: int) -> None:
        """Remove oldest entries (ties by key) until at most ``limit`` remain."""
        excess = len(self._entries) - limit
        if excess <= 0:
            return
        ordered = sorted(self._entries.values(), key=lambda e: (e.timestamp, e.key))
        for entry in ordered[:excess]:
            del self._entries[entry.key]
            self._stats.evictions += 1
            logger.debug("Evicted %s", redact_url(entry.key))

    def _schedule_persist(self) -> None:
        # Caller holds the write lock
        if self._persist_task is not None and not self._persist_task.done():
            self._persist_task.cancel()
        self._persist_task = asyncio.get_running_loop().create_task(
            self._persist_after_quiet_period()
        )

    async def _persist_after_quiet_period(self) -> None:
        await asyncio.sleep(self._debounce)
        # Past the quiet period: a new put schedules a fresh write instead of
        # cancelling this one mid-write.
        if self._persist_task is asyncio.current_task():
            self._persist_task = None
        await self._persist()

    async def _persist(self) -> None:
        async with self._disk_lock:
            async with self._lock.read():
                snapshot = {k: e.to_dict() for k, e in self._entries.items()}
            try:
                await asyncio.to_thread(self._write_file, snapshot)
            except OSError as e:
                logger.warning("Failed to save response cache to %s: %s", self._path, e)
                return
            self._stats.disk_writes += 1
            logger.debug("Response cache saved to disk (%d entries)", len(snapshot))

    def _write_file(self, snapshot: dict[str, Any]) -> None:
        write_json_atomic(self._path, snapshot)

    @staticmethod
    def _decode(raw: bytes) -> dict[str, CacheEntry]:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("cache file root is not an object")
        return {key: CacheEntry.from_dict(key, value) for key, value in data.items()}


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
