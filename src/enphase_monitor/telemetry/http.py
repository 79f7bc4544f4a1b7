"""httpx request helper that maps transport failures onto the API taxonomy."""

from __future__ import annotations

import httpx

from enphase_monitor.telemetry.errors import (
    InvalidResponseError,
    InvalidURLError,
    NetworkError,
)


def build_client(timeout_seconds: float = 30.0) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        headers={"Accept": "application/json"},
    )


async def send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    """Issue a request; raise only TelemetryAPIError subclasses on failure."""
    try:
        return await client.request(method, url, **kwargs)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
        raise InvalidURLError(str(e)) from e
    except (httpx.ProtocolError, httpx.DecodingError, httpx.TooManyRedirects) as e:
        raise InvalidResponseError(str(e)) from e
    except httpx.TransportError as e:
        raise NetworkError(str(e) or type(e).__name__) from e
