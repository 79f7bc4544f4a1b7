"""Configuration management for Enphase Monitor."""

from enphase_monitor.config.schema import AppConfig
from enphase_monitor.config.manager import ConfigManager

__all__ = ["AppConfig", "ConfigManager"]
