"""
Key-Value Store Package

The on-device store the local provider persists into, with
cross-context change notification.
"""

from peasant_budget.services.kvstore.interface import (
    ChangeListener,
    KeyValueStore,
    StorageChangeEvent,
)
from peasant_budget.services.kvstore.memory import (
    MemoryKeyValueStore,
    MemoryStoreBackend,
)
from peasant_budget.services.kvstore.sqlite import SQLiteKeyValueStore

__all__ = [
    "ChangeListener",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "MemoryStoreBackend",
    "SQLiteKeyValueStore",
    "StorageChangeEvent",
]
