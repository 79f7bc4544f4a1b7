"""Response and report caches."""

from enphase_monitor.cache.report_cache import ReportCache, ReportCacheEntry
from enphase_monitor.cache.response_cache import CacheEntry, ResponseCache

__all__ = ["CacheEntry", "ReportCache", "ReportCacheEntry", "ResponseCache"]
