from __future__ import annotations

import json
import os
from typing import Any

from .logger import get_logger

_logger = get_logger("settings")


class SettingsManager:
    """JSON-backed pipeline settings.

    A missing or unreadable file falls back to DEFAULTS. With no path the
    manager is purely in-memory and `set` does not persist.
    """

    def __init__(self, settings_path: str | None = None):
        self.settings_path = settings_path
        self._settings: dict[str, Any] = {}
        self.load()

    DEFAULTS: dict[str, Any] = {
        "worker_count": 0,
        "tick_interval_ms": 16,
        "frame_interval_ms": 16,
        "queued_operation_policy": "best_effort",
        "http_timeout": 10.0,
        "default_font_family": "Arial",
        "generate_texture": True,
        "queue_texture_process": False,
    }

    def load(self) -> None:
        self._settings = {}
        if not self.settings_path:
            return
        try:
            if os.path.exists(self.settings_path):
                with open(self.settings_path, encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    self._settings = data
                    _logger.debug("settings loaded: %s", self.settings_path)
                else:
                    _logger.warning("settings file is not a JSON object: %s", self.settings_path)
        except (OSError, ValueError) as e:
            _logger.warning("settings load failed: %s", e)

    def save(self) -> None:
        if not self.settings_path:
            return
        try:
            parent = os.path.dirname(self.settings_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.settings_path, "w", encoding="utf-8") as f:
                json.dump(self._settings, f, ensure_ascii=False, indent=2)
            _logger.debug("settings saved: %s", self.settings_path)
        except OSError as e:
            _logger.error("settings save failed: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._settings:
            return self._settings[key]
        if default is not None:
            return default
        return self.DEFAULTS.get(key)

    def has(self, key: str) -> bool:
        return key in self._settings

    def set(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self.save()

    @property
    def data(self) -> dict[str, Any]:
        return self._settings

    @property
    def worker_count(self) -> int:
        try:
            count = int(self.get("worker_count"))
        except (TypeError, ValueError):
            _logger.warning("invalid worker_count: %r", self.get("worker_count"))
            count = 0
        return count if count > 0 else (os.cpu_count() or 1)

    @property
    def tick_interval_ms(self) -> int:
        return max(0, int(self.get("tick_interval_ms")))

    @property
    def frame_interval_ms(self) -> int:
        return max(0, int(self.get("frame_interval_ms")))

    @property
    def http_timeout(self) -> float:
        return float(self.get("http_timeout"))

    @property
    def default_font_family(self) -> str:
        val = self.get("default_font_family")
        return val if isinstance(val, str) and val else self.DEFAULTS["default_font_family"]

    @property
    def generate_texture(self) -> bool:
        return bool(self.get("generate_texture"))

    @property
    def queue_texture_process(self) -> bool:
        return bool(self.get("queue_texture_process"))

    @property
    def queued_operation_policy(self) -> str:
        val = str(self.get("queued_operation_policy")).strip().lower()
        if val not in ("best_effort", "abort"):
            _logger.warning("unknown queued_operation_policy %r; using best_effort", val)
            return "best_effort"
        return val
