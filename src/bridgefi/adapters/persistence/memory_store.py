# src/bridgefi/adapters/persistence/memory_store.py
"""
In-Memory Key-Value Store

Dict-backed implementation of KeyValueStore. Values are deep-copied on the
way in and out so callers can never mutate stored state behind the store's
back. A threading lock keeps compare-and-swap atomic even if the store is
touched from worker threads.

Files that USE this module:
- bridgefi.app (default store when STORE_FILE is unset)
- bridgefi.adapters.persistence.file_store (JsonFileStore extends MemoryStore)
- tests.* (every service test runs against it)
"""
from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional


class MemoryStore:
    """Thread-safe dict-backed key-value store."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._write(key, value)

    def compare_and_swap(self, key: str, expected_version: Optional[int], value: Dict[str, Any]) -> bool:
        with self._lock:
            current = self._data.get(key)
            current_version = current.get("version", 0) if current is not None else None
            if current_version != expected_version:
                return False
            self._write(key, value)
            return True

    def values(self, prefix: str = "") -> Iterable[Dict[str, Any]]:
        with self._lock:
            items: List[Dict[str, Any]] = [
                copy.deepcopy(v) for k, v in self._data.items() if k.startswith(prefix)
            ]
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _write(self, key: str, value: Dict[str, Any]) -> None:
        # Lock held by caller; a failed persist rolls the key back
        previous = self._data.get(key)
        self._data[key] = copy.deepcopy(value)
        try:
            self._on_change()
        except Exception:
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def _on_change(self) -> None:
        """Hook called with the lock held after every write."""
        pass
