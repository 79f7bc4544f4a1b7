"""Decoded shapes of upstream API responses.

Only the fields consumed downstream are declared; everything else in the
payload is ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class EnergyReading(_WireModel):
    enwh: int | None = None
    devices_reporting: int | None = None


class StateOfCharge(_WireModel):
    percent: float | None = None
    devices_reporting: int | None = None


class TelemetryInterval(_WireModel):
    """One reporting interval. Which fields are set depends on the endpoint."""

    end_at: int
    devices_reporting: int | None = None
    wh_del: int | None = None  # production meter
    wh_rec: int | None = None
    enwh: int | None = None  # consumption meter
    wh_imported: int | None = None  # energy_import_telemetry
    wh_exported: int | None = None  # energy_export_telemetry
    charge: EnergyReading | None = None  # battery
    discharge: EnergyReading | None = None
    soc: StateOfCharge | None = None


class TelemetryResponse(_WireModel):
    """Flat interval list (production, consumption, battery)."""

    system_id: int | str | None = None
    granularity: str | None = None
    total_devices: int | None = None
    start_at: int | None = None
    end_at: int | None = None
    items: str | None = None
    intervals: list[TelemetryInterval] = Field(default_factory=list)


class MeterTelemetryResponse(_WireModel):
    """Grid import/export: one interval list per meter."""

    system_id: int | str | None = None
    granularity: str | None = None
    start_at: int | None = None
    end_at: int | None = None
    intervals: list[list[TelemetryInterval]] = Field(default_factory=list)


class OAuthTokenResponse(_WireModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str | None = None
