# src/bridgefi/adapters/persistence/file_store.py
"""
JSON File Store - Durable Key-Value Storage

Persists the whole key space to a single JSON file so quotes and journal
entries survive a restart. Every write rewrites the file through a temporary
file and an atomic rename, so a crash mid-write never leaves a truncated
store behind. Reads are served from memory.

Files that USE this module:
- bridgefi.app (store when STORE_FILE is configured)
- tests.test_file_store (unit tests)

Files that this module USES:
- bridgefi.adapters.persistence.memory_store (in-memory map and locking)
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

from bridgefi.adapters.persistence.memory_store import MemoryStore

log = logging.getLogger(__name__)


class JsonFileStore(MemoryStore):
    """MemoryStore that mirrors every successful write to a JSON file."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data = self._load()
        log.info("File store opened: %s (%d records)", self.path, len(self._data))

    def _on_change(self) -> None:
        self._save()

    def _save(self) -> None:
        """
        Write all records using temp file + atomic rename.

        Raises:
            RuntimeError: If the file cannot be written
        """
        temp_fd, temp_path = tempfile.mkstemp(suffix=".json.tmp", dir=str(self.path.parent), text=True)
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())  # Ensure data is written to disk
            os.replace(temp_path, str(self.path))
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise RuntimeError(f"Failed to save store file {self.path}: {e}") from e

    def _load(self) -> Dict[str, Dict[str, Any]]:
        """
        Load records from disk.

        A file that is not valid JSON is backed up to ``*.json.corrupt`` and the
        store starts empty; the backup is what an operator reconciles from.
        """
        if not self.path.exists():
            return {}

        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            backup_path = self.path.with_suffix(".json.corrupt")
            shutil.copy2(self.path, backup_path)
            log.error("Store file corrupted (JSON decode error), backed up to %s: %s", backup_path, e)
            self.path.unlink()
            return {}

        if not isinstance(data, dict):
            raise RuntimeError(f"Store file {self.path} does not contain a JSON object")
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}
