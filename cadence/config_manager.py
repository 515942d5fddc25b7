from __future__ import annotations

import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from cadence.errors import ConfigError
from cadence.models import AppConfig, default_app_config


def _check_payload(payload: dict[str, Any], schema: dict[str, Any], prefix: str = "") -> None:
    for key, value in payload.items():
        path = f"{prefix}{key}"
        if key not in schema:
            raise ConfigError(f"unknown config key: {path}", key=path)
        expected = schema[key]
        if isinstance(expected, dict):
            if not isinstance(value, dict):
                raise ConfigError(f"{path} must be a mapping", key=path)
            _check_payload(value, expected, prefix=f"{path}.")
        elif isinstance(expected, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{path} must be true or false", key=path)
        elif isinstance(expected, int):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{path} must be a positive integer", key=path)


def _overlay(current: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    result = dict(current)
    for key, value in payload.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _overlay(result[key], value)
        else:
            result[key] = value
    return result


class ConfigManager:
    """Series settings stored as YAML next to the event database."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        return AppConfig.from_dict(raw if isinstance(raw, dict) else {})

    @staticmethod
    def _write(path: Path, data: dict[str, Any]) -> None:
        path.write_text(
            yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False),
            encoding="utf-8",
        )

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staged = self.config_path.with_name(self.config_path.name + ".tmp")
            self._write(staged, data)
            try:
                staged.replace(self.config_path)
            except OSError as exc:
                # A bind-mounted config file cannot be swapped; rewrite it in place.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(self.config_path, data)
                staged.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        _check_payload(payload, default_app_config().to_dict())
        with self._lock:
            config = AppConfig.from_dict(_overlay(self.load().to_dict(), payload))
            self.save(config)
        return config
