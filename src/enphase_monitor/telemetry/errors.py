"""Error taxonomy for the upstream telemetry API."""

from __future__ import annotations


class TelemetryAPIError(Exception):
    """Base exception for upstream API failures."""


class InvalidURLError(TelemetryAPIError):
    """Raised when a request URL cannot be built."""


class NetworkError(TelemetryAPIError):
    """Raised on transport-level failures (DNS, connect, timeout)."""


class InvalidResponseError(TelemetryAPIError):
    """Raised when the HTTP exchange itself is malformed."""


class HTTPStatusError(TelemetryAPIError):
    """Raised for a non-2xx status not otherwise classified."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class DecodingError(TelemetryAPIError):
    """Raised when a payload does not match the expected shape."""


class AuthRequiredError(TelemetryAPIError):
    """Raised on HTTP 401 from a telemetry endpoint."""


class RateLimitedError(TelemetryAPIError):
    """Raised on HTTP 429. ``wait_seconds`` is how long to back off."""

    def __init__(self, wait_seconds: int) -> None:
        super().__init__(f"API rate limit exceeded, wait {wait_seconds}s")
        self.wait_seconds = wait_seconds


def user_message(exc: BaseException) -> str:
    """Human-readable text for the display layer."""
    if isinstance(exc, HTTPStatusError):
        body = exc.body.lower()
        if exc.status_code in (400, 401) and (
            "invalid_client" in body or "unauthorized_client" in body
        ):
            return "Client ID and secret do not match. Check the OAuth application credentials."
        if exc.status_code in (400, 401) and "invalid_grant" in body:
            return "Refresh token is expired or revoked. Re-authorise the application."
        return f"HTTP {exc.status_code}: {exc.body}"
    if isinstance(exc, AuthRequiredError):
        return "Authentication required. Please configure OAuth credentials."
    if isinstance(exc, RateLimitedError):
        return f"API rate limit exceeded. Please wait {exc.wait_seconds} seconds."
    if isinstance(exc, InvalidURLError):
        return "Invalid API URL"
    if isinstance(exc, NetworkError):
        return f"Network error: {exc}"
    if isinstance(exc, InvalidResponseError):
        return "Invalid server response"
    if isinstance(exc, DecodingError):
        return f"Data decoding error: {exc}"
    return str(exc) or type(exc).__name__
