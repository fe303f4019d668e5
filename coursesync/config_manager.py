from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from coursesync.models import AppConfig, default_app_config

MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _drop_masked_cookies(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Keep stored cookie values when a client echoes back the masked form."""
    sanitized = copy.deepcopy(payload)
    scrape = sanitized.get("scrape")
    if not isinstance(scrape, dict) or not isinstance(scrape.get("cookies"), dict):
        return sanitized
    stored = current.get("scrape", {}).get("cookies") or {}
    cookies: dict[str, Any] = {}
    for name, value in scrape["cookies"].items():
        text = str(value or "").strip()
        if text == MASK:
            if name in stored:
                cookies[name] = stored[name]
            continue
        cookies[name] = value
    # Cookies are replaced as a whole, not merged key by key.
    scrape["cookies"] = cookies
    return sanitized


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(
        config_dict,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

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
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            stored = self.load().to_dict()
            sanitized = _drop_masked_cookies(payload, stored)
            base = copy.deepcopy(stored)
            scrape_update = sanitized.get("scrape")
            if isinstance(scrape_update, dict) and isinstance(scrape_update.get("cookies"), dict):
                base.setdefault("scrape", {})["cookies"] = {}
            merged = _deep_merge(base, sanitized)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def set_sync_interval(self, minutes: int) -> AppConfig:
        return self.update({"sync": {"interval_minutes": int(minutes)}})

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        cookies = config.get("scrape", {}).get("cookies") or {}
        if cookies:
            config["scrape"]["cookies"] = {name: MASK for name in cookies}
        return config
