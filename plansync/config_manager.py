from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from plansync.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

SECRET_MASK = "***"
SECRET_FIELDS = (("caldav", "password"),)
LOG_LEVEL_ENV = "PLANSYNC_LOG_LEVEL"


def merge_settings(current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``changes`` on ``current`` section by section; neither input is modified."""
    result: dict[str, Any] = {}
    for key in {**current, **changes}:
        old = current.get(key)
        if key not in changes:
            result[key] = merge_settings(old, {}) if isinstance(old, dict) else old
            continue
        new = changes[key]
        if isinstance(old, dict) and isinstance(new, dict):
            result[key] = merge_settings(old, new)
        else:
            result[key] = new
    return result


def _drop_masked_secrets(changes: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(changes)
    for section, name in SECRET_FIELDS:
        values = cleaned.get(section)
        if isinstance(values, dict) and values.get(name) == SECRET_MASK:
            cleaned[section] = {key: value for key, value in values.items() if key != name}
    return cleaned


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML settings file for the service; a missing file is created with defaults."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("No configuration at %s, writing defaults", self.config_path)
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        with self._lock:
            text = self.config_path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a YAML mapping")
        return data

    def load(self) -> AppConfig:
        config = AppConfig.from_dict(self._read_raw())
        level = os.getenv(LOG_LEVEL_ENV, "").strip().upper()
        if level:
            config.logging.level = level
        return config

    def save(self, config: AppConfig) -> None:
        text = _render(config)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staging = self.config_path.with_name(self.config_path.name + ".tmp")
            staging.write_text(text, encoding="utf-8")
            try:
                staging.replace(self.config_path)
            except OSError as exc:
                # a bind-mounted file cannot be swapped out; overwrite it in place
                if exc.errno != errno.EBUSY:
                    raise
                logger.warning("Config file %s is busy, writing in place", self.config_path)
                self.config_path.write_text(text, encoding="utf-8")
                staging.unlink(missing_ok=True)

    def update(self, changes: dict[str, Any]) -> AppConfig:
        with self._lock:
            # read the file itself so env overrides are not persisted
            merged = merge_settings(self._read_raw(), _drop_masked_secrets(changes))
            config = AppConfig.from_dict(merged)
            self.save(config)
        return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for section, name in SECRET_FIELDS:
            values = data.get(section) or {}
            if values.get(name):
                values[name] = SECRET_MASK
        return data
