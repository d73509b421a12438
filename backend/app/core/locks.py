"""
Per-key lock table.

Contention is scoped to one entity id (a report's tally, an alert's
counters) instead of a global lock over the whole engine.

Usage:
    locks = KeyedLocks()
    with locks.hold(report_id):
        report = repo.load(report_id)
        ...
        repo.save(report)
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    """Lazily created re-entrant lock per key."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield

    def discard(self, key: str) -> None:
        """Forget a key whose entity is gone."""
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
