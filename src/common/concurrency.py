"""
Thread Safety Utilities

Provides the synchronization helpers shared by the catalog and the
transaction engine.
"""

from __future__ import annotations

import threading
from typing import Generic, Optional, TypeVar

T = TypeVar('T')


class SnapshotRef(Generic[T]):
    """
    Single reference to an immutable snapshot.

    Writers build a complete new value and swap it in; readers always get
    either the previous or the new value, never a half-built one.

    Example:
        ref = SnapshotRef()
        ref.swap(InstalledState(...))
        state = ref.get()
    """

    def __init__(self, initial: Optional[T] = None):
        self._value = initial
        self._lock = threading.Lock()
        self._generation = 0

    def get(self) -> Optional[T]:
        with self._lock:
            return self._value

    def swap(self, value: T) -> Optional[T]:
        """Replace the snapshot and return the previous one."""
        with self._lock:
            old = self._value
            self._value = value
            self._generation += 1
            return old

    @property
    def generation(self) -> int:
        """Number of swaps performed so far."""
        with self._lock:
            return self._generation


class AtomicCounter:
    """
    Thread-safe atomic counter.

    Example:
        counter = AtomicCounter()
        counter.increment()
        print(counter.value)  # 1
    """

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self, amount: int = 1) -> int:
        """Increment and return new value."""
        with self._lock:
            self._value += amount
            return self._value

    def reset(self, value: int = 0) -> None:
        """Reset to given value."""
        with self._lock:
            self._value = value
