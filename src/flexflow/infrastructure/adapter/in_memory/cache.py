import copy
import threading
from typing import Any

from flexflow.application.port import OperationCache


class InMemoryOperationCache(OperationCache):
    """Lock-guarded result cache shared by every run of one engine."""

    def __init__(self):
        self._store: dict[str, Any] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any):
        """
        Store a copy of the value with the given key.

        :param key: The key to store the value under
        :type key: str
        :param value: The value to store
        :type value: Any
        """
        value = copy.deepcopy(value)
        with self._lock:
            self._store[key] = value

    def get(self, key: str) -> Any:
        """
        Retrieve a copy of the value stored under the key.

        :param key: The key to retrieve the value for
        :type key: str
        :returns: The stored value
        :rtype: Any
        :raises KeyError: If the key is not found
        """
        with self._lock:
            value = self._store[key]
        return copy.deepcopy(value)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._store

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
