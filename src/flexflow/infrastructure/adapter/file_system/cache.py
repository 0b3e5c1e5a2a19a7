import hashlib
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import msgspec
import structlog

from flexflow.domain.error import DataSourceUnavailable, ExecutionError
from flexflow.domain.port import DataSource
from flexflow.infrastructure.adapter.file_system.data_source import atomic_write

logger = structlog.get_logger(__name__)


class CacheStoreConfig(msgspec.Struct, forbid_unknown_fields=True):
    cache_path: str
    ttl_seconds: float = 3600
    max_size_bytes: int = 100 * 1024 * 1024


class CacheEntry(msgspec.Struct):
    stored_at: float
    value: Any = None


class CacheDataSource(DataSource):
    """Persistent key/value cache with one JSON file per entry.

    ``get``, ``set``, ``delete``, ``clear`` and ``cleanup`` manage entries directly;
    ``get`` and ``set`` accept either a ``key`` or an ``operation`` plus ``parameters``.
    Any other operation name is looked up by ``generate_cache_key(operation, parameters)``,
    so the cache can stand in for another source as a fallback.
    """

    source_type = "cache"
    config_type = CacheStoreConfig

    def __init__(self, name: str, config: CacheStoreConfig, clock: Callable[[], float] = time.time):
        super().__init__(name)
        self.config = config
        self.cache_dir = Path(config.cache_path)
        self._clock = clock
        self._lock = threading.Lock()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DataSourceUnavailable(f"{name}: cannot create cache directory {self.cache_dir}: {e}") from e

    def generate_cache_key(self, operation: str, parameters: dict[str, Any]) -> str:
        payload = msgspec.json.encode([operation, parameters], order="sorted")
        return hashlib.sha256(payload).hexdigest()

    def execute(self, operation: str, parameters: dict[str, Any]) -> Any:
        if operation == "get":
            return self.lookup(self._key_of(parameters))
        if operation == "set":
            if "value" not in parameters:
                raise ExecutionError(f"{self.get_name()}: set needs 'value'")
            key = self._key_of(parameters)
            self.store(key, parameters["value"])
            return {"key": key, "stored": True}
        if operation == "delete":
            return {"deleted": self.delete(self._key_of(parameters))}
        if operation == "clear":
            return {"removed": self.clear()}
        if operation == "cleanup":
            return {"removed": self.cleanup_expired_entries()}
        return self.lookup(self.generate_cache_key(operation, parameters))

    def _key_of(self, parameters: dict[str, Any]) -> str:
        key = parameters.get("key")
        if isinstance(key, str) and key:
            return key
        operation = parameters.get("operation")
        if isinstance(operation, str) and operation:
            return self.generate_cache_key(operation, parameters.get("parameters") or {})
        raise ExecutionError(f"{self.get_name()}: 'key' or 'operation' is required")

    def _entry_path(self, key: str) -> Path:
        if not key.isalnum():
            raise ExecutionError(f"{self.get_name()}: invalid cache key: {key!r}")
        return self.cache_dir / f"{key}.json"

    def _read_entry(self, path: Path) -> CacheEntry | None:
        try:
            return msgspec.json.decode(path.read_bytes(), type=CacheEntry)
        except FileNotFoundError:
            return None
        except (OSError, msgspec.DecodeError) as e:
            logger.warning("cache_entry_unreadable", data_source=self.get_name(), entry=path.name, error=str(e))
            return None

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at < self.config.ttl_seconds

    def is_cache_valid(self, key: str) -> bool:
        entry = self._read_entry(self._entry_path(key))
        return entry is not None and self._is_fresh(entry)

    def lookup(self, key: str) -> Any:
        """
        :raises ExecutionError: On a miss or an expired entry
        """
        entry = self._read_entry(self._entry_path(key))
        if entry is None or not self._is_fresh(entry):
            raise ExecutionError(f"{self.get_name()}: cache miss for key {key}")
        return entry.value

    def store(self, key: str, value: Any) -> None:
        payload = msgspec.json.encode(CacheEntry(stored_at=self._clock(), value=value))
        with self._lock:
            try:
                atomic_write(self._entry_path(key), payload)
            except OSError as e:
                raise ExecutionError(f"{self.get_name()}: cannot write cache entry: {e}") from e
            self._enforce_size_limit()

    def delete(self, key: str) -> bool:
        path = self._entry_path(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def clear(self) -> int:
        removed = 0
        with self._lock:
            for path in self.cache_dir.glob("*.json"):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def cleanup_expired_entries(self) -> int:
        """Delete every entry older than the TTL; returns how many were removed."""
        removed = 0
        with self._lock:
            for path in self.cache_dir.glob("*.json"):
                entry = self._read_entry(path)
                if entry is None or not self._is_fresh(entry):
                    path.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.debug("cache_entries_expired", data_source=self.get_name(), removed=removed)
        return removed

    def _enforce_size_limit(self) -> None:
        entries = []
        total = 0
        for path in self.cache_dir.glob("*.json"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            entries.append((stat.st_mtime_ns, path, stat.st_size))
            total += stat.st_size
        # oldest first
        for _, path, size in sorted(entries, key=lambda e: e[0]):
            if total <= self.config.max_size_bytes:
                break
            path.unlink(missing_ok=True)
            total -= size

    def is_available(self) -> bool:
        return self.cache_dir.is_dir()

    def get_type(self) -> str:
        return self.source_type

    def get_connection_info(self) -> dict[str, Any]:
        return {
            "type": self.source_type,
            "name": self.get_name(),
            "cache_path": str(self.cache_dir),
            "ttl_seconds": self.config.ttl_seconds,
            "max_size_bytes": self.config.max_size_bytes,
        }
