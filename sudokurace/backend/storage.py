"""Device-local key/value storage with explicit success/failure results."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from .models import StorageResult

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    def get(self, key: str) -> StorageResult[str]:
        """Return the raw stored string; a missing key is a success with value None."""

    def set(self, key: str, value: str) -> StorageResult[None]:
        """Persist a raw string under key."""

    def remove(self, key: str) -> StorageResult[None]:
        """Delete key if present."""

    def keys(self) -> StorageResult[list[str]]:
        """List every stored key."""


def read_json(storage: KeyValueStorage, key: str) -> StorageResult[Any]:
    """Load and decode a JSON value; absent keys succeed with None, bad JSON fails."""
    raw = storage.get(key)
    if not raw.ok or raw.value is None:
        return raw
    try:
        return StorageResult.success(json.loads(raw.value))
    except ValueError as exc:
        return StorageResult.failure(f"malformed JSON under {key}: {exc}")


def write_json(storage: KeyValueStorage, key: str, value: Any) -> StorageResult[None]:
    try:
        encoded = json.dumps(value)
    except (TypeError, ValueError) as exc:
        return StorageResult.failure(f"cannot encode value for {key}: {exc}")
    return storage.set(key, encoded)


@dataclass
class InMemoryKeyValueStorage:
    def __post_init__(self) -> None:
        self._items: dict[str, str] = {}

    def get(self, key: str) -> StorageResult[str]:
        return StorageResult.success(self._items.get(key))

    def set(self, key: str, value: str) -> StorageResult[None]:
        self._items[key] = value
        return StorageResult.success()

    def remove(self, key: str) -> StorageResult[None]:
        self._items.pop(key, None)
        return StorageResult.success()

    def keys(self) -> StorageResult[list[str]]:
        return StorageResult.success(list(self._items))


@dataclass
class JsonFileKeyValueStorage:
    """All keys in one JSON object on disk, rewritten on every change."""

    path: Path

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return {str(key): str(value) for key, value in payload.items()}

    def _save(self, items: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(items), encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, key: str) -> StorageResult[str]:
        try:
            return StorageResult.success(self._load().get(key))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read %s from %s: %s", key, self.path, exc)
            return StorageResult.failure(str(exc))

    def set(self, key: str, value: str) -> StorageResult[None]:
        try:
            items = self._load()
            items[key] = value
            self._save(items)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to write %s to %s: %s", key, self.path, exc)
            return StorageResult.failure(str(exc))
        return StorageResult.success()

    def remove(self, key: str) -> StorageResult[None]:
        try:
            items = self._load()
            if key in items:
                del items[key]
                self._save(items)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to remove %s from %s: %s", key, self.path, exc)
            return StorageResult.failure(str(exc))
        return StorageResult.success()

    def keys(self) -> StorageResult[list[str]]:
        try:
            return StorageResult.success(list(self._load()))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to list keys in %s: %s", self.path, exc)
            return StorageResult.failure(str(exc))


def create_local_storage(storage_path: str | None) -> KeyValueStorage:
    if storage_path:
        return JsonFileKeyValueStorage(path=Path(storage_path))
    return InMemoryKeyValueStorage()
