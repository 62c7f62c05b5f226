"""Execution-affecting settings: output paths, proxy and request pacing."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from spider_queue.orchestrator.errors import ConfigurationError
from spider_queue.orchestrator.models import (
    ExecutionSettings,
    OutputPaths,
    ProxySettings,
    RequestInterval,
)
from spider_queue.orchestrator.settings_repository import SettingsRepository

PATHS_KEY = "paths"
PROXY_KEY = "proxy"
REQUEST_INTERVAL_KEY = "request_interval"
LAST_TASK_KEY = "last_task"

PROXY_SCHEMES = {"http", "https", "socks5", "socks5h"}


def default_settings(data_dir: Path) -> dict[str, dict[str, Any]]:
    return {
        PATHS_KEY: {
            "media": str(data_dir / "media_datas"),
            "excel": str(data_dir / "excel_datas"),
        },
        PROXY_KEY: {"enabled": False, "url": "http://127.0.0.1:7890"},
        REQUEST_INTERVAL_KEY: {"min": 1.0, "max": 3.0},
    }


class ConfigStore:
    """Persisted key-value settings merged into each execution at dispatch time.

    Stored values are overlaid on the defaults on every read, so a key added
    in a later release shows up for existing databases without a migration.
    """

    def __init__(self, repository: SettingsRepository, *, data_dir: Path) -> None:
        self._repository = repository
        self._defaults = default_settings(data_dir)

    def get_paths(self) -> OutputPaths:
        values = self._read(PATHS_KEY)
        return OutputPaths(media=str(values["media"]), excel=str(values["excel"]))

    def set_paths(self, *, media: str | None = None, excel: str | None = None) -> OutputPaths:
        current = self.get_paths()
        updated = OutputPaths(
            media=current.media if media is None else media.strip(),
            excel=current.excel if excel is None else excel.strip(),
        )
        if not updated.media or not updated.excel:
            raise ConfigurationError("Output paths must be non-empty.")
        self._repository.set(PATHS_KEY, {"media": updated.media, "excel": updated.excel})
        return updated

    def get_proxy(self) -> ProxySettings:
        values = self._read(PROXY_KEY)
        return ProxySettings(enabled=bool(values["enabled"]), url=str(values["url"]))

    def set_proxy(self, *, enabled: bool | None = None, url: str | None = None) -> ProxySettings:
        current = self.get_proxy()
        updated = ProxySettings(
            enabled=current.enabled if enabled is None else enabled,
            url=current.url if url is None else url.strip(),
        )
        if updated.enabled:
            _validate_proxy_url(updated.url)
        self._repository.set(PROXY_KEY, {"enabled": updated.enabled, "url": updated.url})
        return updated

    def get_request_interval(self) -> RequestInterval:
        values = self._read(REQUEST_INTERVAL_KEY)
        return RequestInterval(min=float(values["min"]), max=float(values["max"]))

    def set_request_interval(self, *, min_seconds: float, max_seconds: float) -> RequestInterval:
        if not all(math.isfinite(value) for value in (min_seconds, max_seconds)):
            raise ConfigurationError("Request interval bounds must be finite numbers.")
        if min_seconds < 0:
            raise ConfigurationError("Request interval minimum must be >= 0.")
        if max_seconds < min_seconds:
            raise ConfigurationError("Request interval maximum must be >= minimum.")
        self._repository.set(REQUEST_INTERVAL_KEY, {"min": min_seconds, "max": max_seconds})
        return RequestInterval(min=min_seconds, max=max_seconds)

    def get_last_task(self) -> dict[str, Any] | None:
        stored = self._repository.get(LAST_TASK_KEY)
        return stored if isinstance(stored, dict) else None

    def set_last_task(self, task_type: str, params: dict[str, Any]) -> None:
        self._repository.set(LAST_TASK_KEY, {"type": task_type, "params": params})

    def execution_settings(self) -> ExecutionSettings:
        return ExecutionSettings(
            paths=self.get_paths(),
            proxy=self.get_proxy(),
            request_interval=self.get_request_interval(),
        )

    def get_all(self) -> dict[str, Any]:
        settings: dict[str, Any] = {key: self._read(key) for key in self._defaults}
        last_task = self.get_last_task()
        if last_task is not None:
            settings[LAST_TASK_KEY] = last_task
        return settings

    def reset(self) -> None:
        for key in (*self._defaults, LAST_TASK_KEY):
            self._repository.delete(key)

    def _read(self, key: str) -> dict[str, Any]:
        stored = self._repository.get(key)
        merged = dict(self._defaults[key])
        if isinstance(stored, dict):
            merged.update(stored)
        return merged


def _validate_proxy_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in PROXY_SCHEMES or not parsed.hostname:
        raise ConfigurationError(
            f"Invalid proxy URL: {value!r}. "
            f"Expected a {'/'.join(sorted(PROXY_SCHEMES))} URL with a host.",
        )
