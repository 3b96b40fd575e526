"""
Abstract Key-Value Store Interface

DESIGN DECISION: The local provider talks to an on-device key-value
store through this interface, modelled on a browser's local storage:
- string keys, string values
- a size quota
- a change notification delivered to OTHER contexts (tabs, processes)
  that share the same store

The change notification is a one-way invalidation signal only.
No correctness guarantee is built on its delivery or ordering.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional
from uuid import uuid4

from pydantic import BaseModel

from peasant_budget.log import get_logger


logger = get_logger(__name__)


class StorageChangeEvent(BaseModel):
    """A key was written or removed by another context."""

    key: str
    origin: str


ChangeListener = Callable[[StorageChangeEvent], None]


class KeyValueStore(ABC):
    """
    Abstract interface for an on-device key-value store.

    Each instance is one context (a tab, a process) identified by origin.
    """

    def __init__(self, origin: Optional[str] = None):
        self.origin = origin or uuid4().hex
        self._listeners: set[ChangeListener] = set()

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """
        Read a value.

        Returns:
            The stored string, or None if the key is absent
        """
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Write a value, replacing any previous one.

        Raises:
            QuotaExceededError: If the write would exceed the quota
        """
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is not an error."""
        pass

    @abstractmethod
    def used_bytes(self) -> int:
        """Total size of all stored keys and values."""
        pass

    @property
    @abstractmethod
    def quota_bytes(self) -> int:
        pass

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Subscribe to changes made by other contexts.

        Returns:
            Unsubscribe function
        """
        self._listeners.add(listener)

        def unsubscribe() -> None:
            self._listeners.discard(listener)

        return unsubscribe

    def _dispatch(self, event: StorageChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("change_listener_failed", key=event.key)

    @staticmethod
    def entry_size(key: str, value: str) -> int:
        return len(key.encode("utf-8")) + len(value.encode("utf-8"))
