"""
Durable key-value storage.

Provides the byte store shared by the sync queue and the encrypted record
store: an in-memory implementation for tests and a directory-backed one
that replaces files atomically.
"""

import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from personal_health_sync.utils.exceptions import StorageError
from personal_health_sync.utils.parameters import StorageConfig

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_key(key: str) -> str:
    """
    Check that a storage key is safe to use as a file name.

    Raises:
        ValueError: If the key is empty or contains unsupported characters.
    """
    if not _KEY_PATTERN.match(key) or key in (".", ".."):
        raise ValueError(f"Invalid storage key: {key!r}")
    return key


class KeyValueStore(ABC):
    """Byte-oriented key-value store."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the stored bytes, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store bytes under a key, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a key. Removing an absent key is not an error."""

    @abstractmethod
    def keys(self) -> list[str]:
        """List stored keys."""

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    def get_text(self, key: str) -> str | None:
        """Return the stored value decoded as UTF-8."""
        value = self.get(key)
        if value is None:
            return None
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StorageError(f"Stored value for {key} is not UTF-8 text") from e

    def set_text(self, key: str, value: str) -> None:
        """Store a UTF-8 string."""
        self.set(key, value.encode("utf-8"))


class MemoryKeyValueStore(KeyValueStore):
    """Volatile store used in tests and for ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(validate_key(key))

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[validate_key(key)] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(validate_key(key), None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileKeyValueStore(KeyValueStore):
    """
    Directory-backed store with one file per key.

    Writes go to a temporary file in the same directory which then replaces
    the target, so a crash leaves either the old or the new value on disk.
    """

    def __init__(self, directory: str | Path) -> None:
        """
        Initialize the file store.

        Args:
            directory: Directory holding one file per key.

        Raises:
            StorageError: If the directory cannot be created.
        """
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self.directory}: {e}") from e
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / validate_key(key)

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        with self._lock:
            tmp_name: str | None = None
            try:
                with tempfile.NamedTemporaryFile(
                    dir=self.directory, prefix=f".{key}.", suffix=".tmp", delete=False
                ) as tmp:
                    tmp_name = tmp.name
                    tmp.write(value)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_name, path)
                tmp_name = None
            except OSError as e:
                raise StorageError(f"Failed to write {key}: {e}") from e
            finally:
                if tmp_name is not None:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        logger.warning(f"Could not remove temporary file {tmp_name}")
        logger.debug(f"Stored {len(value)} bytes under {key}")

    def remove(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as e:
                raise StorageError(f"Failed to remove {key}: {e}") from e

    def keys(self) -> list[str]:
        try:
            return sorted(
                p.name for p in self.directory.iterdir() if p.is_file() and not p.name.startswith(".")
            )
        except OSError as e:
            raise StorageError(f"Failed to list {self.directory}: {e}") from e


def create_store(config: StorageConfig) -> KeyValueStore:
    """
    Build the store selected by configuration.

    Args:
        config: Storage configuration.

    Returns:
        Key-value store instance.
    """
    if config.backend == "memory":
        return MemoryKeyValueStore()
    return FileKeyValueStore(config.dir)
