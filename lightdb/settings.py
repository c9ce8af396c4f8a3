from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
import json
import logging
import os
import tempfile
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "https://raw.githubusercontent.com/keefo/NeewerLite/main/Database/lights.json"


class FetchMode(Enum):
    # Read the local copy first, then periodically fetch the published database.
    DEFAULT_REMOTE = "githubDefault"
    CUSTOM_REMOTE = "customURL"
    # Never touch the network, not even for a manual sync.
    DISABLED = "disabled"


DEFAULT_SETTINGS: Dict[str, Any] = {
    "fetch_mode": FetchMode.DEFAULT_REMOTE.value,
    "custom_url": DEFAULT_DATABASE_URL,
    "last_checked": None,
    "ttl_seconds": 28800,
    "tick_seconds": 10,
    "image_workers": 10,
    "request_timeout": 15,
}


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the persisted sync configuration.

    ``last_attempt`` is the time the most recent sync attempt was started,
    whether or not it succeeded. It rate-limits automatic syncs.
    """

    fetch_mode: FetchMode = FetchMode.DEFAULT_REMOTE
    custom_url: str = DEFAULT_DATABASE_URL
    last_attempt: Optional[datetime] = None


def load_settings(settings_path: Path) -> Dict[str, Any]:
    if not settings_path.exists():
        return _merge_default_settings({})
    try:
        with settings_path.open("r", encoding="utf-8") as handle:
            loaded = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Settings file %s is unreadable, using defaults: %s", settings_path, exc)
        return _merge_default_settings({})
    if not isinstance(loaded, dict):
        logger.warning("Settings file %s is not an object, using defaults", settings_path)
        return _merge_default_settings({})
    return _merge_default_settings(loaded)


def save_settings(settings_path: Path, settings: Dict[str, Any]) -> None:
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=settings_path.parent, prefix=".settings-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(settings, handle, indent=2)
        os.replace(tmp_name, settings_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _merge_default_settings(loaded: Dict[str, Any]) -> Dict[str, Any]:
    merged = DEFAULT_SETTINGS.copy()
    merged.update(loaded)
    try:
        FetchMode(merged.get("fetch_mode"))
    except ValueError:
        merged["fetch_mode"] = DEFAULT_SETTINGS["fetch_mode"]
    if not isinstance(merged.get("custom_url"), str):
        merged["custom_url"] = DEFAULT_SETTINGS["custom_url"]
    if _parse_timestamp(merged.get("last_checked")) is None:
        merged["last_checked"] = None
    for key in ("ttl_seconds", "tick_seconds", "image_workers", "request_timeout"):
        value = merged.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            merged[key] = DEFAULT_SETTINGS[key]
    return merged


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncSettings:
    """Owns the settings file and hands out immutable ``SyncState`` snapshots."""

    def __init__(self, settings_path: Path) -> None:
        self.settings_path = settings_path
        self._settings = load_settings(settings_path)

    @property
    def state(self) -> SyncState:
        return SyncState(
            fetch_mode=FetchMode(self._settings["fetch_mode"]),
            custom_url=self._settings["custom_url"],
            last_attempt=_parse_timestamp(self._settings.get("last_checked")),
        )

    def get(self, key: str) -> Any:
        return self._settings.get(key, DEFAULT_SETTINGS.get(key))

    @property
    def ttl_seconds(self) -> float:
        return float(self.get("ttl_seconds"))

    @property
    def tick_seconds(self) -> float:
        return float(self.get("tick_seconds"))

    @property
    def image_workers(self) -> int:
        return int(self.get("image_workers"))

    @property
    def request_timeout(self) -> float:
        return float(self.get("request_timeout"))

    def set_fetch_mode(self, mode: FetchMode) -> None:
        self._settings["fetch_mode"] = FetchMode(mode).value
        self.save()

    def set_custom_url(self, url: str) -> None:
        self._settings["custom_url"] = url
        self.save()

    def record_attempt(self, when: datetime) -> None:
        self._settings["last_checked"] = when.isoformat()
        self.save()

    def save(self) -> None:
        save_settings(self.settings_path, self._settings)
