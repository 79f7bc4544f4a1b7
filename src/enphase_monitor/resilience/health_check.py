"""Per-site endpoint health tracking across fetch cycles.

Each (site, endpoint family) pair is tracked separately. Required families
failing repeatedly point at an outage or bad credentials; a best-effort grid
family that keeps answering 404 means the site has no grid meter installed,
which is reported as such rather than as an outage.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

METER_NOT_FOUND = 404


def endpoint_key(site_id: str, family: str) -> str:
    return f"{site_id}:{family}"


@dataclass
class EndpointHealth:
    site_id: str
    family: str
    best_effort: bool = False
    healthy: bool = True
    last_success: float = 0.0
    last_failure: float = 0.0
    consecutive_failures: int = 0
    total_failures: int = 0
    last_error: str = ""
    last_status_code: int | None = None

    @property
    def name(self) -> str:
        return endpoint_key(self.site_id, self.family)

    @property
    def meter_missing(self) -> bool:
        """Grid reading the site cannot provide: unhealthy, best effort, 404."""
        return (
            self.best_effort
            and not self.healthy
            and self.last_status_code == METER_NOT_FOUND
        )


class HealthChecker:
    """Counts consecutive failures per site endpoint.

    An endpoint is unhealthy after ``max_consecutive_failures`` failures in a
    row and healthy again on its next success.
    """

    def __init__(self, max_consecutive_failures: int = 3) -> None:
        self._max_failures = max_consecutive_failures
        self._endpoints: dict[str, EndpointHealth] = {}

    def _track(self, site_id: str, family: str, best_effort: bool) -> EndpointHealth:
        h = self._endpoints.get(endpoint_key(site_id, family))
        if h is None:
            h = EndpointHealth(site_id=site_id, family=family, best_effort=best_effort)
            self._endpoints[h.name] = h
        return h

    def record_success(self, site_id: str, family: str, best_effort: bool = False) -> None:
        h = self._track(site_id, family, best_effort)
        if not h.healthy:
            logger.info("Site %s %s recovered", site_id, family)
        h.healthy = True
        h.last_success = time.monotonic()
        h.consecutive_failures = 0
        h.last_status_code = None

    def record_failure(
        self,
        site_id: str,
        family: str,
        error: str = "",
        best_effort: bool = False,
        status_code: int | None = None,
    ) -> None:
        h = self._track(site_id, family, best_effort)
        h.last_failure = time.monotonic()
        h.consecutive_failures += 1
        h.total_failures += 1
        h.last_error = error
        h.last_status_code = status_code

        if h.healthy and h.consecutive_failures >= self._max_failures:
            h.healthy = False
            if h.meter_missing:
                logger.info(
                    "Site %s has no %s meter (%d consecutive 404s); reporting it as absent",
                    site_id, family, h.consecutive_failures,
                )
            else:
                logger.warning(
                    "Site %s %s marked unhealthy (%d consecutive failures): %s",
                    site_id, family, h.consecutive_failures, error,
                )

    def is_healthy(self, name: str) -> bool:
        h = self._endpoints.get(name)
        return h.healthy if h else True

    def get_unhealthy(self) -> list[str]:
        return [name for name, h in self._endpoints.items() if not h.healthy]

    def sites_without_grid_meter(self) -> list[str]:
        """Site ids where at least one grid family looks physically absent."""
        return sorted({h.site_id for h in self._endpoints.values() if h.meter_missing})

    def get_health(self, name: str) -> EndpointHealth | None:
        return self._endpoints.get(name)

    def reset(self) -> None:
        self._endpoints.clear()
