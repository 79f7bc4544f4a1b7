"""Wh → kWh daily totals from telemetry intervals."""

from __future__ import annotations

from typing import Iterable, Sequence

from enphase_monitor.telemetry.models import TelemetryInterval

WH_PER_KWH = 1000.0


def daily_total(intervals: Iterable[TelemetryInterval], field: str) -> float:
    """Sum a Wh field across intervals and convert to kWh (missing = 0)."""
    total = sum(getattr(interval, field) or 0 for interval in intervals)
    return total / WH_PER_KWH


def nested_daily_total(
    nested: Iterable[Iterable[TelemetryInterval]], field: str,
) -> float:
    """Like ``daily_total`` over per-meter interval lists, flattened."""
    return daily_total((i for meter in nested for i in meter), field)


def battery_charged(intervals: Iterable[TelemetryInterval]) -> float:
    total = sum(
        (i.charge.enwh or 0) if i.charge is not None else 0 for i in intervals
    )
    return total / WH_PER_KWH


def battery_discharged(intervals: Iterable[TelemetryInterval]) -> float:
    total = sum(
        (i.discharge.enwh or 0) if i.discharge is not None else 0 for i in intervals
    )
    return total / WH_PER_KWH


def latest_soc(intervals: Sequence[TelemetryInterval]) -> int:
    """State of charge from the most recent interval only; 0 if absent."""
    if not intervals:
        return 0
    soc = intervals[-1].soc
    if soc is None or soc.percent is None:
        return 0
    return int(soc.percent)
