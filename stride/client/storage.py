"""
Durable key-value storage for device-side state.

The interface mirrors a browser's localStorage: string keys, string values.
JsonFileStorage keeps every key in a single JSON file under the platform
data directory ({user_data_dir}/storage.json).
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from platformdirs import user_data_dir


logger = logging.getLogger(__name__)

APP_NAME = "stride"
APP_AUTHOR = "StrideCampus"
STORAGE_FILENAME = "storage.json"


class StorageError(Exception):
    """Raised when persisted storage cannot be read or written."""
    pass


def get_default_data_dir() -> Path:
    """
    Get the default data directory for the current platform.

    Returns:
        Path to the platform-appropriate data directory
    """
    return Path(user_data_dir(APP_NAME, APP_AUTHOR))


class KeyValueStorage(ABC):
    """String-to-string durable storage."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def remove_items(self, *keys: str) -> None:
        for key in keys:
            self.remove_item(key)

    def reset(self) -> None:
        """Discard every key."""
        for key in self.keys():
            self.remove_item(key)


class MemoryStorage(KeyValueStorage):
    """Process-local storage, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for {key!r} must be a string")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStorage(KeyValueStorage):
    """
    Storage backed by one JSON object on disk.

    Every write rewrites the file atomically (temp file + rename), so a
    crash mid-write leaves the previous contents intact.

    Raises:
        StorageError: On reads of an unreadable or malformed file, and on
            failed writes
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_default_data_dir() / STORAGE_FILENAME

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt storage file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Corrupt storage file {self.path}: expected an object")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".storage-", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for {key!r} must be a string")
        data = self._read()
        data[key] = value
        self._write(data)
        logger.debug("Stored %s (%d bytes) -> %s", key, len(value), self.path)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def keys(self) -> List[str]:
        return list(self._read().keys())

    def reset(self) -> None:
        """Replace the file with an empty object, discarding corrupt contents."""
        self._write({})
