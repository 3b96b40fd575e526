"""
In-memory key-value store.

One MemoryStoreBackend plays the role of a browser profile; every
context opened on it plays the role of a tab. A write in one context
notifies all the others, never itself.
"""

from typing import Optional

from peasant_budget.errors import QuotaExceededError
from peasant_budget.services.kvstore.interface import (
    KeyValueStore,
    StorageChangeEvent,
)


class MemoryStoreBackend:
    """Shared storage for a group of MemoryKeyValueStore contexts."""

    def __init__(self, quota_bytes: int = 5 * 1024 * 1024):
        self.quota_bytes = quota_bytes
        self.data: dict[str, str] = {}
        self._contexts: list["MemoryKeyValueStore"] = []

    def open_context(self, origin: Optional[str] = None) -> "MemoryKeyValueStore":
        store = MemoryKeyValueStore(self, origin=origin)
        self._contexts.append(store)
        return store

    def broadcast(self, key: str, origin: str) -> None:
        event = StorageChangeEvent(key=key, origin=origin)
        for context in self._contexts:
            if context.origin != origin:
                context._dispatch(event)


class MemoryKeyValueStore(KeyValueStore):
    """A single context on a MemoryStoreBackend."""

    def __init__(
        self,
        backend: Optional[MemoryStoreBackend] = None,
        origin: Optional[str] = None,
    ):
        super().__init__(origin)
        self._backend = backend or MemoryStoreBackend()

    @property
    def quota_bytes(self) -> int:
        return self._backend.quota_bytes

    def get(self, key: str) -> Optional[str]:
        return self._backend.data.get(key)

    def set(self, key: str, value: str) -> None:
        current = self._backend.data.get(key)
        projected = self.used_bytes() + self.entry_size(key, value)
        if current is not None:
            projected -= self.entry_size(key, current)
        if projected > self.quota_bytes:
            raise QuotaExceededError()

        self._backend.data[key] = value
        self._backend.broadcast(key, self.origin)

    def remove(self, key: str) -> None:
        if self._backend.data.pop(key, None) is not None:
            self._backend.broadcast(key, self.origin)

    def used_bytes(self) -> int:
        return sum(
            self.entry_size(key, value)
            for key, value in self._backend.data.items()
        )
