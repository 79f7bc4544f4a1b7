"""OAuth bearer token cache with refresh-token renewal."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
from pydantic import ValidationError

from enphase_monitor.cache.response_cache import Clock, utc_now
from enphase_monitor.config.schema import ApiConfig
from enphase_monitor.telemetry.errors import DecodingError, HTTPStatusError
from enphase_monitor.telemetry.http import send
from enphase_monitor.telemetry.models import OAuthTokenResponse

logger = logging.getLogger(__name__)

# A token this close to expiry is treated as already expired
EXPIRY_MARGIN = timedelta(seconds=60)


@dataclass(frozen=True)
class Token:
    access_token: str
    expiry: datetime

    def is_usable(self, now: datetime) -> bool:
        return self.expiry > now + EXPIRY_MARGIN


def _fingerprint(credentials: ApiConfig) -> str:
    material = "\0".join((
        credentials.authorization_url,
        credentials.client_id,
        credentials.client_secret,
        credentials.refresh_token,
    ))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class TokenCache:
    """Holds the current bearer token; refreshes it when expired or absent.

    Exactly one token is held. Refreshes are serialised so concurrent callers
    share one token request, and the token reference is swapped whole.
    """

    def __init__(self, client: httpx.AsyncClient, clock: Clock | None = None) -> None:
        self._client = client
        self._clock = clock or utc_now
        self._token: Token | None = None
        self._fingerprint: str | None = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def token(self) -> Token | None:
        return self._token

    def invalidate(self) -> None:
        """Forget the current token (e.g. after a credential change)."""
        self._token = None
        self._fingerprint = None

    async def get_valid_token(self, credentials: ApiConfig) -> Token:
        fingerprint = _fingerprint(credentials)
        async with self._lock:
            token = self._token
            if (
                token is not None
                and self._fingerprint == fingerprint
                and token.is_usable(self._clock())
            ):
                return token
            if token is not None and self._fingerprint != fingerprint:
                logger.info("Credentials changed; discarding cached access token")
            token = await self._refresh(credentials)
            self._token = token
            self._fingerprint = fingerprint
            return token

    async def _refresh(self, credentials: ApiConfig) -> Token:
        logger.debug("Requesting access token from %s", credentials.authorization_url)
        resp = await send(
            self._client,
            "POST",
            credentials.authorization_url,
            auth=httpx.BasicAuth(credentials.client_id, credentials.client_secret),
            data={
                "grant_type": "refresh_token",
                "refresh_token": credentials.refresh_token,
            },
        )
        if resp.status_code != 200:
            logger.warning("Token refresh failed with HTTP %d", resp.status_code)
            raise HTTPStatusError(resp.status_code, resp.text or "Unknown error")

        try:
            body = OAuthTokenResponse.model_validate_json(resp.content)
        except ValidationError as e:
            raise DecodingError(f"token response: {e.error_count()} invalid fields") from e

        self.refresh_count += 1
        expiry = self._clock() + timedelta(seconds=body.expires_in)
        logger.info("Access token refreshed (expires in %ds)", body.expires_in)
        return Token(access_token=body.access_token, expiry=expiry)
