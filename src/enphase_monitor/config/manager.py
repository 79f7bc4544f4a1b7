"""Configuration loading, saving, and credential helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from enphase_monitor.config.schema import AppConfig

logger = logging.getLogger(__name__)


class ConfigManager:
    """Loads config from YAML files, validates, and persists user overrides."""

    def __init__(
        self,
        defaults_path: Path | None = None,
        user_path: Path | None = None,
    ) -> None:
        self._defaults_path = defaults_path or Path("config.defaults.yaml")
        self._user_path = user_path or Path("config.yaml")
        self._config: AppConfig | None = None
        self._raw: dict[str, Any] = {}

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            raise RuntimeError("Config not loaded. Call load() first.")
        return self._config

    def load(self) -> AppConfig:
        """Load configuration from defaults + user overrides."""
        defaults = self._load_yaml(self._defaults_path)
        overrides = self._load_yaml(self._user_path) if self._user_path.exists() else {}
        merged = self._deep_merge(defaults, overrides)
        self._raw = merged
        self._config = AppConfig.model_validate(merged)
        logger.info(
            "Configuration loaded (%d systems configured)", len(self._config.systems),
        )
        return self._config

    def get_raw(self) -> dict[str, Any]:
        return dict(self._raw)

    def to_json(self) -> str:
        return self.config.model_dump_json(indent=2)

    def save_user_config(self, updates: dict[str, Any]) -> AppConfig:
        """Apply updates to user config file and reload."""
        current = self._load_yaml(self._user_path) if self._user_path.exists() else {}
        merged = self._deep_merge(current, updates)
        self._write_yaml(merged)
        return self.load()

    def is_configured(self) -> bool:
        """True when all credentials are set and at least one system exists."""
        api = self.config.api
        return bool(
            api.api_key
            and api.client_id
            and api.client_secret
            and api.refresh_token
            and self.config.systems
        )

    def update_api_credentials(
        self,
        api_key: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
    ) -> AppConfig:
        return self.save_user_config({
            "api": {
                "api_key": api_key,
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
        })

    def add_system(self, system_id: str, name: str) -> AppConfig:
        # Lists replace rather than merge, so write the full list back
        systems = [s.model_dump() for s in self.config.systems]
        systems.append({"id": system_id, "name": name})
        return self.save_user_config({"systems": systems})

    def remove_system(self, index: int) -> AppConfig:
        systems = [s.model_dump() for s in self.config.systems]
        if not 0 <= index < len(systems):
            return self.config
        removed = systems.pop(index)
        logger.info("Removing system %s (%s)", removed["id"], removed["name"])
        return self.save_user_config({"systems": systems})

    def clear_config(self) -> AppConfig:
        """Drop all user overrides, reverting to defaults."""
        self._write_yaml({})
        return self.load()

    def _write_yaml(self, data: dict[str, Any]) -> None:
        with open(self._user_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    @staticmethod
    def _load_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with open(path) as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge override into base, returning a new dict."""
        result = dict(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = value
        return result
