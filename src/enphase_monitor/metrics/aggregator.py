"""Metrics aggregator: fetches every configured site and publishes daily totals.

Fetch flow:
  fresh report cached? → publish it, no network
  otherwise → per site, in config order: production, consumption, battery,
  grid import/export (best effort) → SystemMetrics → AggregatedMetrics →
  report cache → publish

Rate limiting retries the whole pass; any other failure falls back to the
cached report, even if stale, before an error is published.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from enphase_monitor.cache.report_cache import ReportCache, ReportCacheEntry
from enphase_monitor.cache.response_cache import Clock, utc_now
from enphase_monitor.config.schema import AppConfig, SystemConfig
from enphase_monitor.logging.context import site_context
from enphase_monitor.metrics.models import AggregatedMetrics, BestEffort, SystemMetrics
from enphase_monitor.resilience.health_check import HealthChecker
from enphase_monitor.telemetry.client import EndpointFamily, TelemetryClient
from enphase_monitor.telemetry.errors import (
    HTTPStatusError,
    RateLimitedError,
    TelemetryAPIError,
    user_message,
)
from enphase_monitor.telemetry.units import (
    battery_charged,
    battery_discharged,
    daily_total,
    latest_soc,
    nested_daily_total,
)
from enphase_monitor.timezone_utils import start_of_day

logger = logging.getLogger(__name__)


class AggregatorStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class MetricsState:
    """Snapshot published to the display layer."""

    status: AggregatorStatus = AggregatorStatus.IDLE
    metrics: AggregatedMetrics | None = None
    error: BaseException | None = None
    error_message: str = ""
    last_updated: datetime | None = None
    from_cache: bool = False
    unhealthy_endpoints: tuple[str, ...] = field(default_factory=tuple)
    sites_without_grid_meter: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_loading(self) -> bool:
        return self.status == AggregatorStatus.LOADING


Listener = Callable[[MetricsState], Any]


def _status_code(exc: TelemetryAPIError) -> int | None:
    return exc.status_code if isinstance(exc, HTTPStatusError) else None


class MetricsAggregator:
    """Orchestrates telemetry fetches across sites with report-level caching."""

    def __init__(
        self,
        client: TelemetryClient,
        report_cache: ReportCache,
        health: HealthChecker | None = None,
        max_rate_limit_retries: int = 2,
        refresh_grace_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock | None = None,
    ) -> None:
        self._client = client
        self._report_cache = report_cache
        self._health = health or HealthChecker()
        self._max_retries = max_rate_limit_retries
        self._refresh_grace = refresh_grace_seconds
        self._sleep = sleep
        self._clock = clock or utc_now
        self._state = MetricsState()
        self._listeners: list[Listener] = []
        self._fetch_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls, config: AppConfig, client: TelemetryClient, report_cache: ReportCache,
    ) -> MetricsAggregator:
        return cls(
            client=client,
            report_cache=report_cache,
            health=HealthChecker(config.resilience.max_consecutive_failures),
            max_rate_limit_retries=config.retry.max_rate_limit_retries,
            refresh_grace_seconds=config.retry.refresh_grace_seconds,
        )

    @property
    def state(self) -> MetricsState:
        return self._state

    @property
    def health(self) -> HealthChecker:
        return self._health

    @property
    def fetch_in_flight(self) -> bool:
        return self._fetch_task is not None and not self._fetch_task.done()

    def add_listener(self, callback: Listener) -> None:
        """Register a sync or async callback invoked on every state change."""
        self._listeners.append(callback)

    async def fetch_metrics(self, config: AppConfig) -> MetricsState:
        """Serve a fresh cached report, or run (or join) a full fetch."""
        entry = await self._report_cache.load_fresh()
        if entry is not None:
            logger.info(
                "Report still fresh (age %.1fs); skipping API calls",
                entry.age_seconds(self._clock()),
            )
            await self._serve_cached(entry, AggregatorStatus.IDLE)
            return self._state
        return await self._await_fetch(config, restart=False)

    async def refresh_metrics(self, config: AppConfig) -> MetricsState:
        """Pull-to-refresh: supersede any in-flight fetch, then fetch unless fresh.

        The fetch runs as its own task; cancelling the caller only stops the
        wait, not the fetch.
        """
        task = self._fetch_task
        if task is not None and not task.done():
            logger.info("Refresh while loading; cancelling in-flight fetch")
            task.cancel()
            await asyncio.sleep(self._refresh_grace)

        entry = await self._report_cache.load_fresh()
        if entry is not None:
            logger.info("Report still fresh; serving cache without API call")
            await self._serve_cached(entry, AggregatorStatus.IDLE)
            return self._state
        return await self._await_fetch(config, restart=True)

    async def perform_fetch(self, config: AppConfig, retry_count: int = 0) -> AggregatedMetrics:
        """Fetch all sites, retrying the whole pass when rate limited."""
        attempt = retry_count
        while True:
            try:
                return await self._fetch_all_sites(config, attempt)
            except RateLimitedError as e:
                if attempt >= self._max_retries:
                    logger.error(
                        "Rate limit retries exhausted after %d attempts", attempt + 1,
                    )
                    raise
                logger.warning(
                    "Rate limited; waiting %ds before retry (attempt %d/%d)",
                    e.wait_seconds, attempt + 1, self._max_retries + 1,
                )
                await self._sleep(e.wait_seconds)
                attempt += 1

    async def clear_cache(self) -> None:
        await self._report_cache.clear()

    async def close(self) -> None:
        """Cancel and await any in-flight fetch."""
        task = self._fetch_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ── fetch orchestration ──────────────────────────────────

    async def _await_fetch(self, config: AppConfig, restart: bool) -> MetricsState:
        task = self._fetch_task
        if restart or task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._fetch_with_fallback(config))
            self._fetch_task = task
        else:
            logger.debug("Joining in-flight fetch")
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The fetch we were waiting on was superseded
            return self._state

    async def _fetch_with_fallback(self, config: AppConfig) -> MetricsState:
        await self._publish(replace(self._state, status=AggregatorStatus.LOADING))
        try:
            await self.perform_fetch(config)
        except asyncio.CancelledError:
            logger.warning("Fetch cancelled; falling back to cached report")
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            if self._fetch_task is not asyncio.current_task():
                return self._state
            entry = await self._report_cache.load()
            if entry is not None:
                await self._serve_cached(entry, AggregatorStatus.READY)
            else:
                await self._publish(replace(
                    self._state, status=AggregatorStatus.IDLE, error=None, error_message="",
                ))
        except Exception as e:
            entry = await self._report_cache.load()
            if entry is not None:
                logger.warning(
                    "Fetch failed (%s); serving cached report aged %.1fs",
                    e, entry.age_seconds(self._clock()),
                )
                await self._serve_cached(entry, AggregatorStatus.READY)
            else:
                logger.error("Fetch failed with no cached report: %s", e)
                await self._publish(replace(
                    self._state,
                    status=AggregatorStatus.FAILED,
                    error=e,
                    error_message=user_message(e),
                ))
        return self._state

    async def _fetch_all_sites(self, config: AppConfig, attempt: int) -> AggregatedMetrics:
        now = self._clock()
        start = start_of_day(now, config.timezone)
        logger.info(
            "Fetching today's data for %d systems (attempt %d/%d)",
            len(config.systems), attempt + 1, self._max_retries + 1,
        )
        if not config.systems:
            logger.warning("No systems configured")

        # Sequential on purpose: bounds request bursts against the rate limit
        systems: list[SystemMetrics] = []
        for system in config.systems:
            with site_context(system.id, system.name):
                systems.append(await self._fetch_site(system, start, now, config))

        aggregated = AggregatedMetrics.combine(systems, timestamp=now)
        entry = await self._report_cache.save(aggregated)
        await self._publish(MetricsState(
            status=AggregatorStatus.READY,
            metrics=aggregated,
            last_updated=entry.timestamp,
        ))
        logger.info(
            "Fetch complete: production %.2f kWh, consumption %.2f kWh, net import %.2f kWh",
            aggregated.production_kwh, aggregated.consumption_kwh, aggregated.net_import_kwh,
        )
        return aggregated

    async def _fetch_site(
        self, system: SystemConfig, start: datetime, end: datetime, config: AppConfig,
    ) -> SystemMetrics:
        logger.debug("Fetching data for system %s (%s)", system.name, system.id)
        production = await self._required(EndpointFamily.PRODUCTION, system, start, end, config)
        consumption = await self._required(EndpointFamily.CONSUMPTION, system, start, end, config)
        battery = await self._required(EndpointFamily.BATTERY, system, start, end, config)
        grid_import = await self._best_effort(
            EndpointFamily.GRID_IMPORT, "wh_imported", system, start, end, config,
        )
        grid_export = await self._best_effort(
            EndpointFamily.GRID_EXPORT, "wh_exported", system, start, end, config,
        )

        return SystemMetrics.build(
            site_id=system.id,
            name=system.name,
            production_kwh=daily_total(production.intervals, "wh_del"),
            consumption_kwh=daily_total(consumption.intervals, "enwh"),
            battery_soc_percent=latest_soc(battery.intervals),
            battery_charged_kwh=battery_charged(battery.intervals),
            battery_discharged_kwh=battery_discharged(battery.intervals),
            grid_import=grid_import,
            grid_export=grid_export,
        )

    async def _required(
        self,
        family: EndpointFamily,
        system: SystemConfig,
        start: datetime,
        end: datetime,
        config: AppConfig,
    ):
        try:
            resp = await self._client.fetch(family, system.id, start, end, config.api)
        except TelemetryAPIError as e:
            self._health.record_failure(
                system.id, family.value, str(e), status_code=_status_code(e),
            )
            raise
        self._health.record_success(system.id, family.value)
        return resp

    async def _best_effort(
        self,
        family: EndpointFamily,
        field_name: str,
        system: SystemConfig,
        start: datetime,
        end: datetime,
        config: AppConfig,
    ) -> BestEffort:
        """Some sites have no grid meters; their absence must not fail the pass."""
        try:
            resp = await self._client.fetch(family, system.id, start, end, config.api)
        except TelemetryAPIError as e:
            self._health.record_failure(
                system.id, family.value, str(e),
                best_effort=True, status_code=_status_code(e),
            )
            logger.warning(
                "%s not available for %s: %s", family.value, system.name, user_message(e),
            )
            return BestEffort.unavailable(user_message(e))
        self._health.record_success(system.id, family.value, best_effort=True)
        return BestEffort.ok(nested_daily_total(resp.intervals, field_name))

    # ── publishing ───────────────────────────────────────────

    async def _serve_cached(self, entry: ReportCacheEntry, status: AggregatorStatus) -> None:
        await self._publish(MetricsState(
            status=status,
            metrics=entry.metrics,
            last_updated=entry.metrics.timestamp,
            from_cache=True,
        ))

    async def _publish(self, state: MetricsState) -> None:
        self._state = replace(
            state,
            unhealthy_endpoints=tuple(self._health.get_unhealthy()),
            sites_without_grid_meter=tuple(self._health.sites_without_grid_meter()),
        )
        for cb in self._listeners:
            try:
                result = cb(self._state)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Metrics listener error")
