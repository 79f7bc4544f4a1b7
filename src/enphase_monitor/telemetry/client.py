"""Enphase Enlighten v4 telemetry client.

API docs: https://developer-v4.enphase.com/docs.html
The API key goes in the ``key`` query parameter; the OAuth access token in the
Authorization header. Every GET consults the shared ResponseCache first.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from enphase_monitor.cache.response_cache import ResponseCache, redact_url
from enphase_monitor.config.schema import ApiConfig
from enphase_monitor.telemetry.errors import (
    AuthRequiredError,
    DecodingError,
    HTTPStatusError,
    InvalidURLError,
    RateLimitedError,
)
from enphase_monitor.telemetry.http import send
from enphase_monitor.telemetry.models import MeterTelemetryResponse, TelemetryResponse
from enphase_monitor.telemetry.token import TokenCache

logger = logging.getLogger(__name__)

# Upstream does not send a usable Retry-After, so back off a fixed minute
RATE_LIMIT_WAIT_SECONDS = 60


class EndpointFamily(str, Enum):
    PRODUCTION = "production"
    CONSUMPTION = "consumption"
    BATTERY = "battery"
    GRID_IMPORT = "grid_import"
    GRID_EXPORT = "grid_export"

    @property
    def path_template(self) -> str:
        return _PATHS[self]

    @property
    def response_model(self) -> type[BaseModel]:
        if self in (EndpointFamily.GRID_IMPORT, EndpointFamily.GRID_EXPORT):
            return MeterTelemetryResponse
        return TelemetryResponse


_PATHS = {
    EndpointFamily.PRODUCTION: "systems/{site_id}/telemetry/production_meter",
    EndpointFamily.CONSUMPTION: "systems/{site_id}/telemetry/consumption_meter",
    EndpointFamily.BATTERY: "systems/{site_id}/telemetry/battery",
    EndpointFamily.GRID_IMPORT: "systems/{site_id}/energy_import_telemetry",
    EndpointFamily.GRID_EXPORT: "systems/{site_id}/energy_export_telemetry",
}


class TelemetryClient:
    """Authenticated, cache-first GETs for the five telemetry endpoint families."""

    def __init__(
        self,
        response_cache: ResponseCache,
        token_cache: TokenCache,
        client: httpx.AsyncClient,
    ) -> None:
        self._cache = response_cache
        self._tokens = token_cache
        self._client = client

    @property
    def response_cache(self) -> ResponseCache:
        return self._cache

    @property
    def token_cache(self) -> TokenCache:
        return self._tokens

    @staticmethod
    def build_url(
        family: EndpointFamily,
        site_id: str,
        start: datetime,
        end: datetime,
        config: ApiConfig,
    ) -> str:
        """Full request URL; doubles as the response cache key."""
        site_id = site_id.strip()
        if not site_id:
            raise InvalidURLError("empty site id")
        path = family.path_template.format(site_id=quote(site_id, safe=""))
        try:
            url = httpx.URL(
                f"{config.base_url.rstrip('/')}/{path}",
                params={
                    "start_at": int(start.timestamp()),
                    "end_at": int(end.timestamp()),
                    "granularity": config.granularity,
                    "key": config.api_key,
                },
            )
        except httpx.InvalidURL as e:
            raise InvalidURLError(str(e)) from e
        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidURLError(f"unusable base URL {config.base_url!r}")
        return str(url)

    async def fetch(
        self,
        family: EndpointFamily,
        site_id: str,
        start: datetime,
        end: datetime,
        config: ApiConfig,
    ) -> TelemetryResponse | MeterTelemetryResponse:
        token = await self._tokens.get_valid_token(config)
        url = self.build_url(family, site_id, start, end, config)
        model = family.response_model

        cached = await self._cache.get(url)
        if cached is not None:
            try:
                return model.model_validate_json(cached.payload)
            except ValidationError:
                logger.warning(
                    "Cached %s payload for %s no longer decodes; refetching",
                    family.value, redact_url(url),
                )
                await self._cache.clear(url)

        resp = await send(
            self._client,
            "GET",
            url,
            headers={"Authorization": f"Bearer {token.access_token}"},
        )

        if resp.status_code == 200:
            try:
                decoded = model.model_validate_json(resp.content)
            except ValidationError as e:
                logger.error(
                    "Decoding %s response for %s failed: %s",
                    family.value, redact_url(url), resp.text[:500],
                )
                raise DecodingError(
                    f"{family.value}: {e.error_count()} invalid fields"
                ) from e
            await self._cache.put(url, resp.content, resp.status_code, dict(resp.headers))
            logger.debug(
                "Fetched %s for site %s (%d intervals)",
                family.value, site_id, len(decoded.intervals),
            )
            return decoded
        if resp.status_code == 401:
            # The token was rejected; mint a new one next time
            self._tokens.invalidate()
            raise AuthRequiredError("telemetry endpoint returned 401")
        if resp.status_code == 429:
            logger.warning("Rate limited on %s for site %s", family.value, site_id)
            raise RateLimitedError(RATE_LIMIT_WAIT_SECONDS)
        raise HTTPStatusError(resp.status_code, resp.text or "Unknown error")

    async def fetch_production(
        self, site_id: str, start: datetime, end: datetime, config: ApiConfig,
    ) -> TelemetryResponse:
        return await self.fetch(EndpointFamily.PRODUCTION, site_id, start, end, config)

    async def fetch_consumption(
        self, site_id: str, start: datetime, end: datetime, config: ApiConfig,
    ) -> TelemetryResponse:
        return await self.fetch(EndpointFamily.CONSUMPTION, site_id, start, end, config)

    async def fetch_battery(
        self, site_id: str, start: datetime, end: datetime, config: ApiConfig,
    ) -> TelemetryResponse:
        return await self.fetch(EndpointFamily.BATTERY, site_id, start, end, config)

    async def fetch_grid_import(
        self, site_id: str, start: datetime, end: datetime, config: ApiConfig,
    ) -> MeterTelemetryResponse:
        return await self.fetch(EndpointFamily.GRID_IMPORT, site_id, start, end, config)

    async def fetch_grid_export(
        self, site_id: str, start: datetime, end: datetime, config: ApiConfig,
    ) -> MeterTelemetryResponse:
        return await self.fetch(EndpointFamily.GRID_EXPORT, site_id, start, end, config)
