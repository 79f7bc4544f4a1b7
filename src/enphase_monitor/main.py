"""Enphase Monitor application entry point and lifecycle orchestrator.

Startup sequence:
  config → HTTP client → response cache (load from disk) → token cache →
  telemetry client → report cache → aggregator → initial fetch → poll loop
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from pathlib import Path

from enphase_monitor import __version__
from enphase_monitor.cache.report_cache import ReportCache
from enphase_monitor.cache.response_cache import ResponseCache
from enphase_monitor.config.manager import ConfigManager
from enphase_monitor.config.schema import AppConfig
from enphase_monitor.logging.structured import setup_logging
from enphase_monitor.metrics.aggregator import AggregatorStatus, MetricsAggregator, MetricsState
from enphase_monitor.telemetry.client import TelemetryClient
from enphase_monitor.telemetry.http import build_client
from enphase_monitor.telemetry.token import TokenCache

logger = logging.getLogger(__name__)


def log_report(state: MetricsState) -> None:
    """Console display sink: one summary line per published report."""
    if state.status == AggregatorStatus.FAILED:
        logger.error("Metrics unavailable: %s", state.error_message)
        return
    metrics = state.metrics
    if metrics is None or state.is_loading:
        return
    logger.info(
        "Today%s: production %.2f kWh, consumption %.2f kWh, net import %.2f kWh",
        " (cached)" if state.from_cache else "",
        metrics.production_kwh, metrics.consumption_kwh, metrics.net_import_kwh,
    )
    for system in metrics.systems:
        logger.info(
            "  %s: production %.2f kWh, consumption %.2f kWh, battery %d%%%s",
            system.name, system.production_kwh, system.consumption_kwh,
            system.battery_soc_percent,
            "" if system.grid_complete else " (grid meter data unavailable)",
        )
    if state.sites_without_grid_meter:
        logger.info("No grid meter at: %s", ", ".join(state.sites_without_grid_meter))
    if state.unhealthy_endpoints:
        logger.warning("Unhealthy endpoints: %s", ", ".join(state.unhealthy_endpoints))


class Application:
    """Main application lifecycle manager.

    Owns the single per-process cache, client and aggregator instances and
    wires them together.
    """

    def __init__(self, config: AppConfig, config_manager: ConfigManager) -> None:
        self.config = config
        self.config_manager = config_manager
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

        self._http = build_client(config.api.timeout_seconds)
        self.response_cache = ResponseCache.from_config(config.cache)
        self.token_cache = TokenCache(self._http)
        self.client = TelemetryClient(self.response_cache, self.token_cache, self._http)
        self.report_cache = ReportCache.from_config(config.cache)
        self.aggregator = MetricsAggregator.from_config(config, self.client, self.report_cache)
        self.aggregator.add_listener(log_report)

    @property
    def state(self) -> MetricsState:
        return self.aggregator.state

    async def start(self) -> None:
        """Load caches, fetch once, then poll until stopped."""
        logger.info("Starting Enphase Monitor v%s", __version__)
        self._running = True
        self._stop_event.clear()

        await self.response_cache.load_from_disk()
        if not self.config_manager.is_configured():
            logger.warning("API credentials or systems missing; fetches will fail")

        self._tasks.append(asyncio.create_task(self._poll_loop(), name="poll_loop"))
        await self._stop_event.wait()

    async def run_once(self) -> MetricsState:
        await self.response_cache.load_from_disk()
        return await self.aggregator.fetch_metrics(self.config)

    async def refresh(self) -> MetricsState:
        return await self.aggregator.refresh_metrics(self.config)

    async def clear_caches(self) -> None:
        """The settings "clear cache" trigger: drop responses and the report."""
        await self.response_cache.clear()
        await self.response_cache.flush()
        await self.aggregator.clear_cache()

    async def reload_config(self) -> None:
        """Re-read config files; a credential change drops the cached token."""
        old_api = self.config.api
        self.config = self.config_manager.load()
        if self.config.api != old_api:
            self.token_cache.invalidate()
            logger.info("API credentials changed")

    async def handle_memory_warning(self) -> None:
        await self.response_cache.handle_memory_warning()

    async def stop(self) -> None:
        """Stop polling, persist caches and release the HTTP client."""
        if not self._running:
            return
        logger.info("Stopping Enphase Monitor")
        self._running = False
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.aggregator.close()
        await self.response_cache.flush()
        await self._http.aclose()

    async def _poll_loop(self) -> None:
        interval = self.config.refresh_interval_seconds
        while not self._stop_event.is_set():
            try:
                await self.aggregator.fetch_metrics(self.config)
            except Exception:
                logger.exception("Error in poll loop iteration")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="enphase-monitor")
    p.add_argument("--config", default="config.yaml", help="user config file")
    p.add_argument("--defaults", default="config.defaults.yaml", help="defaults config file")
    p.add_argument("--once", action="store_true", help="fetch once, print JSON and exit")
    p.add_argument("--clear-cache", action="store_true", help="delete cached responses and report")
    return p.parse_args(argv)


async def _run_once(app: Application) -> int:
    try:
        state = await app.run_once()
    finally:
        await app.stop()
    if state.metrics is not None:
        print(state.metrics.model_dump_json(indent=2))
    if state.status == AggregatorStatus.FAILED:
        print(json.dumps({"error": state.error_message}), file=sys.stderr)
        return 1
    return 0


async def _clear(app: Application) -> None:
    try:
        await app.clear_caches()
    finally:
        await app.stop()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the application."""
    args = parse_args(argv)
    config_manager = ConfigManager(Path(args.defaults), Path(args.config))
    config = config_manager.load()

    setup_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.file,
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application(config, config_manager)
    app._running = True

    if args.clear_cache:
        loop.run_until_complete(_clear(app))
        loop.close()
        return
    if args.once:
        code = loop.run_until_complete(_run_once(app))
        loop.close()
        sys.exit(code)

    stop_requested = False
    signal_count = 0

    async def _run() -> None:
        try:
            await app.start()
        finally:
            if app._running:
                with contextlib.suppress(Exception):
                    await app.stop()

    def _request_stop() -> None:
        nonlocal stop_requested, signal_count
        signal_count += 1
        if signal_count >= 2:
            os._exit(130)
        if stop_requested or loop.is_closed():
            return
        stop_requested = True
        loop.call_soon_threadsafe(lambda: asyncio.create_task(app.stop()))

    def _spawn(coro_factory) -> None:
        loop.call_soon_threadsafe(lambda: asyncio.create_task(coro_factory()))

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop)
        loop.add_signal_handler(signal.SIGHUP, _spawn, app.refresh)
        loop.add_signal_handler(signal.SIGUSR2, _spawn, app.handle_memory_warning)
    else:
        signal.signal(signal.SIGINT, lambda *_: _request_stop())
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, lambda *_: _request_stop())

    try:
        loop.run_until_complete(_run())
    except KeyboardInterrupt:
        _request_stop()
        with contextlib.suppress(Exception):
            loop.run_until_complete(app.stop())
    finally:
        pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            with contextlib.suppress(Exception):
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


if __name__ == "__main__":
    main()
