from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calbridge.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

SECRET_FIELDS = (("google", "client_secret"), ("microsoft", "client_secret"))
MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed provider credentials and sync tuning."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing default calbridge config to %s", self.config_path)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        staged = self.config_path.with_name(self.config_path.name + ".tmp")
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_yaml(staged, data)
            try:
                staged.replace(self.config_path)
                return
            except OSError as exc:
                # Bind-mounted single files cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
            logger.warning("Config %s is busy; rewriting it in place", self.config_path)
            _write_yaml(self.config_path, data)
            staged.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload``; a masked or blank secret keeps the stored one."""
        with self._lock:
            current = self.load().to_dict()
            payload = copy.deepcopy(payload)
            for section, key in SECRET_FIELDS:
                section_payload = payload.get(section)
                if not isinstance(section_payload, dict) or key not in section_payload:
                    continue
                if str(section_payload[key] or "").strip() in {"", MASK}:
                    if current.get(section, {}).get(key):
                        section_payload.pop(key)
                    else:
                        section_payload[key] = ""
            config = AppConfig.from_dict(_deep_merge(current, payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
