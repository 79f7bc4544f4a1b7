"""Daily energy metric value types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from pydantic import BaseModel, ConfigDict, field_validator


def as_utc(value: datetime) -> datetime:
    """Treat a naive timestamp as UTC; leave aware ones untouched."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class BestEffort:
    """Outcome of an optional reading: a value, or the reason it is missing.

    Contributes zero when unavailable, but keeps "no meter" distinct from a
    genuine 0 kWh day.
    """

    value: float | None = None
    error: str | None = None

    @classmethod
    def ok(cls, value: float) -> BestEffort:
        return cls(value=value)

    @classmethod
    def unavailable(cls, error: str) -> BestEffort:
        return cls(error=error)

    @property
    def available(self) -> bool:
        return self.value is not None

    def or_zero(self) -> float:
        return self.value if self.value is not None else 0.0


class SystemMetrics(BaseModel):
    """Per-site daily rollup (kWh unless noted)."""

    model_config = ConfigDict(frozen=True)

    site_id: str
    name: str
    production_kwh: float
    consumption_kwh: float
    battery_soc_percent: int
    grid_import_kwh: float
    grid_export_kwh: float
    battery_charged_kwh: float
    battery_discharged_kwh: float
    net_imported_kwh: float
    grid_import_available: bool = True
    grid_export_available: bool = True

    @classmethod
    def build(
        cls,
        site_id: str,
        name: str,
        production_kwh: float,
        consumption_kwh: float,
        battery_soc_percent: int,
        battery_charged_kwh: float,
        battery_discharged_kwh: float,
        grid_import: BestEffort,
        grid_export: BestEffort,
    ) -> SystemMetrics:
        imported = grid_import.or_zero()
        exported = grid_export.or_zero()
        return cls(
            site_id=site_id,
            name=name,
            production_kwh=production_kwh,
            consumption_kwh=consumption_kwh,
            battery_soc_percent=battery_soc_percent,
            grid_import_kwh=imported,
            grid_export_kwh=exported,
            battery_charged_kwh=battery_charged_kwh,
            battery_discharged_kwh=battery_discharged_kwh,
            net_imported_kwh=imported - exported,
            grid_import_available=grid_import.available,
            grid_export_available=grid_export.available,
        )

    @property
    def grid_complete(self) -> bool:
        return self.grid_import_available and self.grid_export_available


class AggregatedMetrics(BaseModel):
    """Combined totals across all sites, plus the per-site breakdown."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    production_kwh: float
    consumption_kwh: float
    grid_import_kwh: float
    grid_export_kwh: float
    net_import_kwh: float
    systems: tuple[SystemMetrics, ...] = ()

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def combine(cls, systems: Sequence[SystemMetrics], timestamp: datetime) -> AggregatedMetrics:
        grid_import = sum(s.grid_import_kwh for s in systems)
        grid_export = sum(s.grid_export_kwh for s in systems)
        return cls(
            timestamp=timestamp,
            production_kwh=sum(s.production_kwh for s in systems),
            consumption_kwh=sum(s.consumption_kwh for s in systems),
            grid_import_kwh=grid_import,
            grid_export_kwh=grid_export,
            net_import_kwh=grid_import - grid_export,
            systems=tuple(systems),
        )

    @property
    def incomplete_grid_sites(self) -> list[str]:
        """Sites whose grid import/export could not be read."""
        return [s.site_id for s in self.systems if not s.grid_complete]
