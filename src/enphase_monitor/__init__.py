"""Enphase Monitor: multi-site energy telemetry aggregation with caching."""

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("enphase-monitor")
except Exception:
    __version__ = "dev"
