"""Per-key mutexes for serializing work on one conversation or topic."""

import weakref
from contextlib import contextmanager
from threading import Lock
from typing import Iterator


class _KeyLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = Lock()


class KeyedLocks:
    """Thread-safe registry of locks, one per key.

    Entries are weakly referenced, so a key's lock disappears once no caller
    holds or waits on it and the registry does not grow with every id seen.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, _KeyLock]" = weakref.WeakValueDictionary()
        self._lock = Lock()

    def _entry(self, key: str) -> _KeyLock:
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        entry = self._entry(key)
        with entry.lock:
            yield

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)


CONVERSATION_LOCKS = KeyedLocks()
TOPIC_LOCKS = KeyedLocks()
