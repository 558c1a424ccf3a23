# src/bridgefi/adapters/persistence/base.py
"""
Key-Value Store Interface

Records are JSON-compatible dicts carrying an integer ``version``.
``compare_and_swap`` is the only conditional write: it succeeds when the
stored version equals ``expected_version`` (``None`` meaning "absent"),
which is what makes status transitions and first-time inserts atomic.

Files that USE this module:
- bridgefi.adapters.persistence.memory_store (MemoryStore implements KeyValueStore)
- bridgefi.adapters.persistence.file_store (JsonFileStore implements KeyValueStore)
- bridgefi.application.quote_ledger, bridgefi.application.journal
"""
from typing import Any, Dict, Iterable, Optional, Protocol


class KeyValueStore(Protocol):
    """Protocol for namespaced record stores."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set(self, key: str, value: Dict[str, Any]) -> None:
        ...

    def compare_and_swap(self, key: str, expected_version: Optional[int], value: Dict[str, Any]) -> bool:
        ...

    def values(self, prefix: str = "") -> Iterable[Dict[str, Any]]:
        ...

    def __len__(self) -> int:
        ...
