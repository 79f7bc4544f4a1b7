"""Shared test fixtures for Enphase Monitor."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from enphase_monitor.cache.report_cache import ReportCache
from enphase_monitor.cache.response_cache import ResponseCache
from enphase_monitor.config.manager import ConfigManager
from enphase_monitor.config.schema import ApiConfig, AppConfig, CacheConfig, SystemConfig
from enphase_monitor.metrics.aggregator import MetricsAggregator
from enphase_monitor.resilience.health_check import HealthChecker
from enphase_monitor.telemetry.client import TelemetryClient
from enphase_monitor.telemetry.token import TokenCache

TOKEN_URL = "https://api.test/oauth/token"
BASE_URL = "https://api.test/api/v4"
DAY_START = 1717200000

PRODUCTION = "telemetry/production_meter"
CONSUMPTION = "telemetry/consumption_meter"
BATTERY = "telemetry/battery"
GRID_IMPORT = "energy_import_telemetry"
GRID_EXPORT = "energy_export_telemetry"


class FakeClock:
    """Settable clock for TTL and expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 18, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _intervals(field: str, values: list[Any]) -> list[dict[str, Any]]:
    return [
        {"end_at": DAY_START + 900 * (i + 1), field: v}
        for i, v in enumerate(values)
    ]


class FakeEnphaseAPI:
    """In-process stand-in for the token and telemetry endpoints.

    Routes hold a queue of (status, body) pairs; the last pair repeats once
    the queue is down to one. Unrouted telemetry paths return 404.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []
        self.token_responses: list[tuple[int, Any]] = []
        self.gates: dict[str, asyncio.Event] = {}
        self._routes: dict[tuple[str, str], list[tuple[int, Any]]] = {}
        self._tokens_issued = 0

    def route(self, site_id: str, endpoint: str, *responses: tuple[int, Any]) -> None:
        self._routes[(site_id, endpoint)] = list(responses)

    def add_site(
        self,
        site_id: str,
        production_wh: list[int],
        consumption_wh: list[int],
        soc: list[int] | None = None,
        import_wh: list[list[int]] | None = None,
        export_wh: list[list[int]] | None = None,
    ) -> None:
        self.route(site_id, PRODUCTION, (200, {"intervals": _intervals("wh_del", production_wh)}))
        self.route(site_id, CONSUMPTION, (200, {"intervals": _intervals("enwh", consumption_wh)}))
        battery = [
            {
                "end_at": DAY_START + 900 * (i + 1),
                "charge": {"enwh": 100},
                "discharge": {"enwh": 50},
                "soc": {"percent": pct},
            }
            for i, pct in enumerate(soc or [50])
        ]
        self.route(site_id, BATTERY, (200, {"intervals": battery}))
        if import_wh is not None:
            self.route(site_id, GRID_IMPORT, (200, {
                "intervals": [_intervals("wh_imported", meter) for meter in import_wh],
            }))
        if export_wh is not None:
            self.route(site_id, GRID_EXPORT, (200, {
                "intervals": [_intervals("wh_exported", meter) for meter in export_wh],
            }))

    def telemetry_requests(self, endpoint: str | None = None) -> list[httpx.Request]:
        if endpoint is None:
            return list(self.requests)
        return [r for r in self.requests if r.url.path.endswith("/" + endpoint)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth/token"):
            self.token_requests.append(request)
            if self.token_responses:
                status, body = self.token_responses.pop(0)
                return _response(status, body)
            self._tokens_issued += 1
            return httpx.Response(200, json={
                "access_token": f"token-{self._tokens_issued}",
                "token_type": "bearer",
                "expires_in": 3600,
            })

        self.requests.append(request)
        _, _, tail = request.url.path.partition("/systems/")
        site_id, _, endpoint = tail.partition("/")
        gate = self.gates.get(endpoint)
        if gate is not None:
            await gate.wait()
        queue = self._routes.get((site_id, endpoint))
        if not queue:
            return httpx.Response(404, text="Not Found")
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        return _response(status, body)


def _response(status: int, body: Any) -> httpx.Response:
    if isinstance(body, (dict, list)):
        return httpx.Response(status, json=body)
    return httpx.Response(status, text=body or "")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def api_config() -> ApiConfig:
    return ApiConfig(
        api_key="test-key",
        client_id="client-id",
        client_secret="client-secret",
        refresh_token="refresh-1",
        authorization_url=TOKEN_URL,
        base_url=BASE_URL,
    )


@pytest.fixture
def config(api_config: ApiConfig, tmp_path: Path) -> AppConfig:
    """Two-site configuration with caches under tmp_path."""
    return AppConfig(
        api=api_config,
        systems=[
            SystemConfig(id="site-a", name="House"),
            SystemConfig(id="site-b", name="Barn"),
        ],
        timezone="UTC",
        cache=CacheConfig(directory=str(tmp_path / "cache"), persist_debounce_seconds=0.01),
    )


@pytest.fixture
def config_manager(tmp_path: Path) -> ConfigManager:
    """Provide a config manager with test paths."""
    defaults = tmp_path / "config.defaults.yaml"
    defaults.write_text("timezone: UTC\n")
    user = tmp_path / "config.yaml"
    mgr = ConfigManager(defaults_path=defaults, user_path=user)
    mgr.load()
    return mgr


@pytest.fixture
def fake_api() -> FakeEnphaseAPI:
    return FakeEnphaseAPI()


@pytest.fixture
def two_sites(fake_api: FakeEnphaseAPI) -> FakeEnphaseAPI:
    """site-a: 10 kWh produced, 5 consumed, 2.0 in / 0.5 out.
    site-b: 8 kWh produced, 6 consumed, 1.0 in / 0.2 out.
    """
    fake_api.add_site(
        "site-a", [6000, 4000], [3000, 2000], soc=[70, 85],
        import_wh=[[1500], [500]], export_wh=[[500]],
    )
    fake_api.add_site(
        "site-b", [8000], [6000], soc=[40],
        import_wh=[[1000]], export_wh=[[200]],
    )
    return fake_api


@pytest_asyncio.fixture
async def http_client(fake_api: FakeEnphaseAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def response_cache(config: AppConfig) -> AsyncGenerator[ResponseCache, None]:
    cache = ResponseCache.from_config(config.cache)
    yield cache
    await cache.flush()


@pytest.fixture
def token_cache(http_client: httpx.AsyncClient) -> TokenCache:
    return TokenCache(http_client)


@pytest.fixture
def telemetry_client(
    response_cache: ResponseCache, token_cache: TokenCache, http_client: httpx.AsyncClient,
) -> TelemetryClient:
    return TelemetryClient(response_cache, token_cache, http_client)


@pytest.fixture
def report_cache(config: AppConfig) -> ReportCache:
    return ReportCache.from_config(config.cache)


@pytest.fixture
def sleep() -> AsyncMock:
    """Stand-in for the rate-limit backoff sleep."""
    return AsyncMock()


@pytest_asyncio.fixture
async def aggregator(
    telemetry_client: TelemetryClient, report_cache: ReportCache, sleep: AsyncMock,
) -> AsyncGenerator[MetricsAggregator, None]:
    agg = MetricsAggregator(
        telemetry_client,
        report_cache,
        health=HealthChecker(max_consecutive_failures=3),
        refresh_grace_seconds=0.01,
        sleep=sleep,
    )
    yield agg
    await agg.close()
