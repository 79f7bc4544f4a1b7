"""Tests for Wh → kWh conversion helpers."""

from __future__ import annotations

import pytest

from enphase_monitor.telemetry.models import TelemetryInterval
from enphase_monitor.telemetry.units import (
    battery_charged,
    battery_discharged,
    daily_total,
    latest_soc,
    nested_daily_total,
)


def interval(**fields) -> TelemetryInterval:
    fields.setdefault("end_at", 1717200900)
    return TelemetryInterval.model_validate(fields)


class TestDailyTotal:
    def test_sums_and_converts(self) -> None:
        intervals = [interval(wh_del=v) for v in (1000, 500, 250)]
        assert daily_total(intervals, "wh_del") == 1.75

    def test_missing_field_counts_as_zero(self) -> None:
        intervals = [interval(wh_del=1000), interval(), interval(wh_del=500)]
        assert daily_total(intervals, "wh_del") == 1.5

    def test_empty(self) -> None:
        assert daily_total([], "enwh") == 0.0

    def test_nested_flattens_meters(self) -> None:
        nested = [
            [interval(wh_imported=1500)],
            [interval(wh_imported=300), interval(wh_imported=200)],
        ]
        assert nested_daily_total(nested, "wh_imported") == 2.0


class TestBattery:
    def test_charge_and_discharge(self) -> None:
        intervals = [
            interval(charge={"enwh": 400}, discharge={"enwh": 0}),
            interval(charge={"enwh": 600}, discharge={"enwh": 250}),
            interval(),
        ]
        assert battery_charged(intervals) == 1.0
        assert battery_discharged(intervals) == 0.25

    def test_soc_uses_last_interval_only(self) -> None:
        intervals = [
            interval(soc={"percent": 20}),
            interval(soc={"percent": 90}),
            interval(soc={"percent": 55.7}),
        ]
        assert latest_soc(intervals) == 55

    @pytest.mark.parametrize("intervals", [[], [interval()], [interval(soc={})]])
    def test_soc_defaults_to_zero(self, intervals) -> None:
        assert latest_soc(intervals) == 0
