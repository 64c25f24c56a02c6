from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from radisync.models import AppConfig, default_app_config


MASK = "***"
SECRET_FIELDS = (("caldav", "password"), ("google", "client_secret"))

# Environment variables that override values read from the YAML file.
ENV_OVERRIDES = {
    "RADISYNC_CALDAV_URL": ("caldav", "base_url"),
    "RADISYNC_CALDAV_USERNAME": ("caldav", "username"),
    "RADISYNC_CALDAV_PASSWORD": ("caldav", "password"),
    "RADISYNC_GOOGLE_CLIENT_ID": ("google", "client_id"),
    "RADISYNC_GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
    "RADISYNC_APP_HOST": ("google", "app_host"),
}


def _deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(
        config_dict,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config root must be a mapping: {self.config_path}")
        return data

    def _env_layer(self) -> dict[str, Any]:
        layer: dict[str, Any] = {}
        for name, (section, key) in ENV_OVERRIDES.items():
            value = self.environ.get(name)
            if value:
                layer.setdefault(section, {})[key] = value
        return layer

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(_deep_merge(self._read_file(), self._env_layer()))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: Mapping[str, Any]) -> AppConfig:
        """Merge ``payload`` into the file; empty or masked secrets keep their stored value."""
        with self._lock:
            current = AppConfig.from_dict(self._read_file()).to_dict()
            cleaned = copy.deepcopy(dict(payload))
            for section, key in SECRET_FIELDS:
                block = cleaned.get(section)
                if isinstance(block, dict) and str(block.get(key, "")).strip() in {"", MASK}:
                    block.pop(key, None)
            config = AppConfig.from_dict(_deep_merge(current, cleaned))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
