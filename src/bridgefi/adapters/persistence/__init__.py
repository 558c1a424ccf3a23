# src/bridgefi/adapters/persistence/__init__.py
"""
Persistence Adapters - Key-Value Stores

This package contains the key-value stores behind the quote ledger and
the transaction journal:
- In-memory store (tests, single-process development)
- JSON file store (durable across restarts)
"""

from bridgefi.adapters.persistence.base import KeyValueStore
from bridgefi.adapters.persistence.memory_store import MemoryStore
from bridgefi.adapters.persistence.file_store import JsonFileStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
]
