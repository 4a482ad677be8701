from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from osis_sync.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"
CREDENTIAL_SERVICES = ("calendar", "ledger")
SECRET_FIELDS = ("access_token", "refresh_token", "client_secret")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets from an update so the stored values survive."""
    sanitized = copy.deepcopy(payload)
    credentials = sanitized.get("credentials")
    if not isinstance(credentials, dict):
        return sanitized
    current_credentials = current.get("credentials", {}) or {}
    for service in CREDENTIAL_SERVICES:
        entry = credentials.get(service)
        if not isinstance(entry, dict):
            continue
        stored = current_credentials.get(service, {}) or {}
        for name in SECRET_FIELDS:
            if name not in entry:
                continue
            text = str(entry[name] or "").strip()
            if text in {"", MASK}:
                if stored.get(name):
                    entry.pop(name)
                else:
                    entry[name] = ""
        if not entry:
            credentials.pop(service)
    if not credentials:
        sanitized.pop("credentials")
    return sanitized


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("writing default configuration to %s", self.config_path)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                logger.warning("atomic replace of %s failed with EBUSY, writing in place", self.config_path)
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, sanitize_config_payload(payload, current))
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for service in CREDENTIAL_SERVICES:
            entry = config.get("credentials", {}).get(service, {})
            for name in SECRET_FIELDS:
                if entry.get(name):
                    entry[name] = MASK
        return config
