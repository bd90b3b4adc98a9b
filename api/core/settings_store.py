"""
Global settings persistence.

Global settings live as camelCase keys in the same settings.json that
holds startup values; saving merges into the file and keeps other keys.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from core.cert_store import write_file_atomic
from core.errors import InvalidRequestError, StorageError
from models.settings import GlobalSettings

logger = logging.getLogger(__name__)


def _field_aliases() -> dict[str, str]:
    return {name: (info.alias or name) for name, info in GlobalSettings.model_fields.items()}


def _to_alias_keys(changes: dict[str, Any]) -> dict[str, Any]:
    aliases = _field_aliases()
    return {aliases.get(key, key): value for key, value in changes.items()}


class SettingsStore:
    """Load, validate, save and apply GlobalSettings."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._settings = GlobalSettings()
        self._listeners: list[Callable[[GlobalSettings], Any]] = []

    def add_listener(self, listener: Callable[[GlobalSettings], Any]) -> None:
        """Register a callback run with the new settings after load and every update."""
        self._listeners.append(listener)

    def _read_file(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.error(f"Settings file {self.path} unreadable: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> GlobalSettings:
        """Read global settings from disk, falling back to defaults on invalid content."""
        data = self._read_file()
        try:
            loaded = GlobalSettings.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid global settings in {self.path}, using defaults: {e.error_count()} error(s)")
            loaded = GlobalSettings()
        with self._lock:
            self._settings = loaded
        self.apply(loaded)
        return loaded

    def get(self) -> GlobalSettings:
        with self._lock:
            return self._settings.model_copy(deep=True)

    def update(self, changes: dict[str, Any]) -> GlobalSettings:
        """
        Merge changes into the current settings, persist and apply them.

        Args:
            changes: camelCase or snake_case keys; nested objects merge one level deep

        Returns:
            The updated settings

        Raises:
            InvalidRequestError: If the merged settings are invalid
        """
        with self._lock:
            merged = self._settings.to_json()
            for key, value in _to_alias_keys(changes).items():
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            try:
                updated = GlobalSettings.model_validate(merged)
            except ValidationError as e:
                raise InvalidRequestError(
                    "Invalid settings",
                    suggestion="Check field names and values",
                    errors=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()],
                )
            self._save(updated)
            self._settings = updated
        logger.info(f"Global settings updated: {', '.join(sorted(changes))}")
        self.apply(updated)
        return updated.model_copy(deep=True)

    def _save(self, global_settings: GlobalSettings) -> None:
        data = self._read_file()
        data.update(global_settings.to_json())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_file_atomic(self.path, json.dumps(data, indent=2).encode("utf-8"))
        except OSError as e:
            raise StorageError(f"Unable to save settings: {e.strerror or e}")

    def apply(self, global_settings: GlobalSettings) -> None:
        logging.getLogger().setLevel(global_settings.python_log_level)
        for listener in self._listeners:
            listener(global_settings)
